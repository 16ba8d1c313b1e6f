# Convert between SVD documents and the internalized data structure.

import io
import logging
import re

import xmltodict
from xml.parsers.expat import ExpatError

log = logging.getLogger(__name__)

SCHEMA_VERSION = '1.1'
XS_NAMESPACE = 'http://www.w3.org/2001/XMLSchema-instance'

ACCESS = ('read-only', 'write-only', 'read-write', 'writeOnce', 'read-writeOnce')


class SvdError(Exception):
    """ Raised when a model can't be written as SVD, or an SVD document can't be read. """


def _safe_int(s, base=0):
    """Parse integer string, handling leading zeros that Python 3 int(base=0) rejects."""
    if isinstance(s, int):
        return s
    try:
        return int(s, base=base)
    except ValueError:
        # Strip leading zeros from bare decimal values (e.g. '072', '00000010')
        return int(s.lstrip('0') or '0')

def _hex(value:int, digits:int=0):
    return '0x{:0{}X}'.format(value, digits)

# ============================================================================
# Reading
# ============================================================================

def parse(source):
    """ read a SVD file (path or file object) and return it as a data structure """
    if hasattr(source, 'read'):
        return parseString(source.read())
    with open(source, 'rb') as file:
        return parseString(file.read())

def parseString(text):
    """ parse SVD text and return it as a data structure """
    try:
        return xmltodict.parse(text)
    except ExpatError as e:
        raise SvdError(f"malformed SVD document: {e}") from e

def toNumber(tbl:dict, keys:list):
    """ In a table, in-place convert all listed keys into a number. """
    for k in keys:
        if k in tbl and not isinstance(tbl[k], int):
            v = re.sub(r'^#', '0b', tbl[k].lower())
            tbl[k] = _safe_int(v)

def toBoolean(tbl:dict, keys:list):
    """ In a table, in-place convert all listed keys into a boolean. """
    for k in keys:
        if k in tbl:
            tbl[k] = str(tbl[k]).lower() in ('true', '1')

def asArray(tbl):
    """ return as an array of tables, even if tbl is only a single table
        if tbl is already an array, return it. If it is associative, wrap it in an array. """
    return tbl if isinstance(tbl, list) else ([ tbl ] if tbl else [])

def findNamedEntry(array:list, name:str):
    """ Go through an array and try to find an entry with the given name.
        If not found, returns None. """
    for e in array:
        if e.get('name') == name:
            return e

def collateInterrupts(peripheral:dict):
    """ Go through the interrupts of this peripheral and collate them into an array. """
    peripheral['interrupts'] = asArray(peripheral.get('interrupt'))
    if 'interrupt' in peripheral:
        del peripheral['interrupt']
    for i in peripheral['interrupts']:
        if not (i and i.get('value') is not None and i.get('name')):
            raise SvdError(f"peripheral {peripheral.get('name')} has an incomplete interrupt entry")
        i['value'] = _safe_int(i['value'])
    if not peripheral['interrupts']:
        del peripheral['interrupts']

def collateEnums(field:dict):
    """ go through the field and collate the enums into an array
        the data structure is modified in place. """
    evs = asArray(field.get('enumeratedValues'))
    if not evs:
        return
    # several enumeratedValues blocks exist when read and write usage differ; keep the first
    field['enumeratedValues'] = asArray(evs[0].get('enumeratedValue'))
    for e in field['enumeratedValues']:
        # we need to treat the values specially, because they may contain don't care bits
        val = re.sub(r'^#', '0b', e['value'].lower())
        if val[0:2] == "0b":
            v = val.replace("x", "0")
            e['value'] = _safe_int(v)
            if val != v:  # value has "don't care" bits
                v = val[2:].replace("0", "1").replace("x", "0")
                e['valuemask'] = int(v, base=2)
        else:
            e['value'] = _safe_int(val)

def collateFields(fields:dict):
    """ Go through the register and collate the fields into an array
        The bit ranges are converted to bitOffset/bitWidth style for uniformity
        The list of fields is returned sorted according to bitOffset. """
    fld = asArray((fields or {}).get('field'))
    flds = []
    for f in fld:
        if f.get('bitRange'):
            m = re.match(r'\[([^:]+):([^\]]+)\]', f['bitRange'])
            f['msb'], f['lsb'] = m.group(1,2)
            del f['bitRange']
        if f.get('msb') and f.get('lsb'):
            f['bitOffset'] = f['lsb']
            f['bitWidth'] = str(_safe_int(f['msb']) - _safe_int(f['lsb']) + 1)
            del f['msb']
            del f['lsb']
        if f.get('bitWidth'):
            f['bitWidth'] = _safe_int(f['bitWidth'])
        else:
            f['bitWidth'] = 1
        toNumber(f, [ "bitOffset", "dim", "dimIncrement" ])
        collateEnums(f)
        flds.append(f)
    flds.sort(key=lambda x: x['bitOffset'])
    return flds if flds else None   # return None instead of empty list

def collateRegisters(cluster:dict):
    """ Go through the cluster and collate the registers.
        The registers section of a peripheral is a cluster and follows its structure.
        On input, a cluster may contain an array named "register" and/or an array named "cluster".
        The latter contains all clusters at that level, and each of them gets processed recursively.
        Both register and cluster arrays in the cluster are removed.
        The register list is returned sorted for increasing addresses.
        In the returned list, the distinction between a cluster and a single register is through
        the presence or absence of an entry "registers". """
    cluster = cluster or {}
    reg, clu = asArray(cluster.get('register')), asArray(cluster.get('cluster'))
    regs = []
    ints = [ "addressOffset", "size", "resetMask", "resetValue", "dim", "dimIncrement" ]
    for r in reg:
        toNumber(r, ints)
        r['fields'] = collateFields(r.get('fields'))
        regs.append(r)
    if 'register' in cluster:
        del cluster['register']
    for c in clu:
        toNumber(c, ints)
        c['registers'] = collateRegisters(c)
        regs.append(c)
    if 'cluster' in cluster:
        del cluster['cluster']
    regs.sort(key=lambda x: x['addressOffset'])
    return regs

def collatePeripherals(device:dict):
    """ go through the device and collate the peripherals into an array
        the data structure is modified in place. """
    per = device.get('peripherals') or {}
    device['peripherals'] = asArray(per.get('peripheral'))
    for p in device['peripherals']:
        toNumber(p, [ "baseAddress", "size", "resetMask", "resetValue", "dim", "dimIncrement" ])
        p['registers'] = collateRegisters(p.get('registers'))
        collateInterrupts(p)
        # we now go through the list of address blocks
        p['addressBlocks'] = asArray(p.get('addressBlock'))
        if 'addressBlock' in p:
            del p['addressBlock']
        for b in p['addressBlocks']:
            toNumber(b, [ "offset", "size" ])
        if not p['addressBlocks']:
            del p['addressBlocks']

def collateCpu(device:dict, interruptOffset:int=16):
    """ go through the device CPU section and collate all its information
        the data structure is modified in place. """
    cpu = device.get('cpu')
    if cpu:
        toNumber(cpu, [ "nvicPrioBits" ])
        toBoolean(cpu, [ "mpuPresent", "fpuPresent", "vendorSystickConfig" ])
    device['interruptOffset'] = interruptOffset
    device['interrupts'] = device.get('interrupts', [])

def collateDevice(root:dict, interruptOffset:int=16):
    """ go through the device and collate all its information
        the data structure is modified in place. """
    if not root or not isinstance(root.get('device'), dict):
        raise SvdError("document has no <device> element")
    try:
        toNumber(root['device'], [ "addressUnitBits", "width", "size", "resetMask", "resetValue" ])
        collateCpu(root['device'], interruptOffset)
        collatePeripherals(root['device'])
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise SvdError(f"malformed device description: {e!r}") from e
    return root['device']

def collectInterrupts(peripherals:list, offset:int):
    """ go through the list of peripherals and return interrupt info as a sorted dict.
        The returned dict is indexed by interrupt number. Note that the index is not
        necessarily contiguous, so a list doesn't fit here.
        Each entry is an array of interrupt sources as text in the format
        "<peripheral_name>.<interrupt_name>", with the meaning that those
        interrupt sources are ored into one interrupt vector. """
    ints = {}
    for p in peripherals:
        for intr in p.get('interrupts', []):
            v = intr['value'] + offset
            ints.setdefault(v, []).append(p['name'] + "." + intr['name'])
    return dict(sorted(ints.items()))

def collectModelsAndInstances(peripherals:list):
    """ Go through the list of peripherals and return model and instance dicts.
        The first returned dict is indexed by model name, the second by peripheral name.
        A derived peripheral shares the model of the peripheral it is derived from. """
    models, ins = {}, {}
    for n, per in enumerate(peripherals):
        name = per['name']
        if per.get('baseAddress') is None:
            raise SvdError(f"peripheral {name} has no baseAddress")
        ins[name] = { 'id': n, 'baseAddress': per['baseAddress'] }
        if '@derivedFrom' in per:
            base = findNamedEntry(peripherals, per['@derivedFrom'])
            if base is None:
                raise SvdError(f"peripheral {name} is derived from unknown peripheral {per['@derivedFrom']}")
            ins[name]['model'] = base.get('headerStructName', base['name'])
            ins[name]['description'] = per.get('description', base.get('description'))
        else:
            model = per.get('headerStructName', name)
            ins[name]['model'] = model
            ins[name]['description'] = per.get('description')
            models[model] = per
    return models, ins

# ============================================================================
# Writing
# ============================================================================

def _require(tbl:dict, key:str, what:str):
    if tbl.get(key) is None:
        raise SvdError(f"{what} has no {key}")
    return tbl[key]

def _fieldElement(field:dict, where:str):
    name = _require(field, 'name', f"field in {where}")
    el = { 'name': name }
    if field.get('description'):
        el['description'] = field['description']
    el['bitOffset'] = str(_require(field, 'bitOffset', f"field {where}.{name}"))
    el['bitWidth'] = str(field.get('bitWidth', 1))
    if field.get('access'):
        el['access'] = field['access']
    if field.get('enumeratedValues'):
        el['enumeratedValues'] = { 'enumeratedValue': [
            { 'name': e['name'], 'description': e.get('description') or e['name'], 'value': str(e['value']) }
            for e in field['enumeratedValues'] ] }
    return el

def _registerElement(reg:dict, where:str, width:int):
    name = _require(reg, 'name', f"register in {where}")
    size = reg.get('size', width)
    el = { 'name': name }
    if reg.get('description'):
        el['description'] = reg['description']
    el['addressOffset'] = _hex(_require(reg, 'addressOffset', f"register {where}.{name}"))
    el['size'] = str(size)
    if reg.get('access'):
        el['access'] = reg['access']
    if reg.get('resetValue') is not None:
        el['resetValue'] = _hex(reg['resetValue'], size // 4)
    if reg.get('resetMask') is not None:
        el['resetMask'] = _hex(reg['resetMask'], size // 4)
    fields = [ _fieldElement(f, f"{where}.{name}") for f in reg.get('fields') or [] ]
    if fields:
        el['fields'] = { 'field': fields }
    return el

def _addressBlock(regs:list, width:int):
    span = 0
    for r in regs:
        span = max(span, r['addressOffset'] + r.get('size', width) // 8)
    return { 'offset': '0x0', 'size': _hex(max(span, 1)), 'usage': 'registers' }

def _peripheralElement(per:dict, width:int):
    name = _require(per, 'name', "peripheral")
    el = {}
    if per.get('derivedFrom'):
        el['@derivedFrom'] = per['derivedFrom']
    el['name'] = name
    if per.get('description'):
        el['description'] = per['description']
    if per.get('groupName'):
        el['groupName'] = per['groupName']
    el['baseAddress'] = _hex(_require(per, 'baseAddress', f"peripheral {name}"))
    regs = per.get('registers') or []
    if not per.get('derivedFrom'):
        el['addressBlock'] = _addressBlock(regs, width)
    ints = [ { 'name': i['name'], 'description': i.get('description') or i['name'], 'value': str(i['value']) }
             for i in per.get('interrupts', []) ]
    if ints:
        el['interrupt'] = ints
    if regs:
        el['registers'] = { 'register': [ _registerElement(r, name, width) for r in regs ] }
    return el

def toDocument(chip:dict):
    """ Build the xmltodict representation of a SVD document for the chip model. """
    width = chip.get('width', 8)
    device = {
        '@schemaVersion': SCHEMA_VERSION,
        '@xmlns:xs': XS_NAMESPACE,
        '@xs:noNamespaceSchemaLocation': 'CMSIS-SVD.xsd',
        'vendor': chip.get('vendor', 'Atmel'),
        'name': _require(chip, 'name', "device"),
    }
    if chip.get('series'):
        device['series'] = chip['series']
    device['version'] = chip.get('version', '1.0')
    device['description'] = chip.get('description') or chip['name']
    device['addressUnitBits'] = '8'
    device['width'] = str(width)
    device['size'] = str(width)
    device['access'] = 'read-write'
    device['resetValue'] = _hex(0, width // 4)
    device['resetMask'] = _hex((1 << width) - 1, width // 4)
    device['peripherals'] = { 'peripheral': [ _peripheralElement(p, width) for p in chip.get('peripherals', []) ] }
    return { 'device': device }

def generate(chip:dict, file):
    """ Write the chip model as a SVD document to an open text file. """
    doc = toDocument(chip)
    try:
        xmltodict.unparse(doc, output=file, encoding='utf-8', pretty=True, indent='  ')
        file.write('\n')
    except (OSError, ValueError) as e:
        raise SvdError(f"unable to write SVD for {chip['name']}: {e}") from e

def generateString(chip:dict):
    """ Return the chip model as SVD text. """
    buf = io.StringIO()
    generate(chip, buf)
    return buf.getvalue()
