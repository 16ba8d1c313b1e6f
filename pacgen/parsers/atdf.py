"""Read Atmel/Microchip ATDF device files into the chip model.

The chip model uses the same plain dict layout as the collated SVD data
(see pacgen.tools.svd), so that the SVD writer can consume it directly:

  { 'name': 'ATmega328P', 'architecture': 'AVR8', 'family': 'megaAVR', 'width': 8,
    'description': ..., 'peripherals': [
      { 'name': 'PORTB', 'description': ..., 'baseAddress': 0x23,
        'interrupts': [ { 'name': ..., 'description': ..., 'value': 3 } ],
        'registers': [
          { 'name': 'PORTB', 'addressOffset': 2, 'size': 8, 'access': 'read-write',
            'resetValue': 0, 'resetMask': 0xFF, 'fields': [
              { 'name': 'PB0', 'bitOffset': 0, 'bitWidth': 1, 'enumeratedValues': [...] } ] } ] } ] }
"""

import logging

import xmltodict
from xml.parsers.expat import ExpatError

log = logging.getLogger(__name__)

ATDF_EXTENSION = '.atdf'

REPEATED = (
    'device', 'module', 'instance', 'register-group', 'register',
    'bitfield', 'value-group', 'value', 'interrupt',
)

ACCESS = {
    'R': 'read-only',
    'W': 'write-only',
    'RW': 'read-write',
    '': 'read-write',
}

UNSAFE_CPU_REGS = frozenset(['SREG', 'SP', 'SPH', 'SPL'])


class AtdfError(Exception):
    """A malformed or unsupported ATDF document."""

    def __init__(self, message, element=None):
        self.message = message
        self.element = element
        super().__init__(str(self))

    def __str__(self):
        if self.element:
            return f"{self.message} (in {self.element})"
        return self.message


def _attr(node, key, where, default=None):
    value = node.get('@' + key, default)
    if value is None:
        raise AtdfError(f"missing attribute '{key}'", where)
    return value


def _int(node, key, where, default=None):
    text = _attr(node, key, where, default)
    if isinstance(text, int):
        return text
    try:
        return int(text, 0)
    except ValueError:
        raise AtdfError(f"attribute '{key}' is not a number: {text!r}", where) from None


def _caption(node, fallback):
    return (node.get('@caption') or '').strip() or fallback


def maskRuns(mask):
    """ Split a bit mask into (offset, width) runs of contiguous ones, lowest first. """
    runs = []
    bit = 0
    while mask >> bit:
        if (mask >> bit) & 1:
            start = bit
            while (mask >> bit) & 1:
                bit += 1
            runs.append((start, bit - start))
        else:
            bit += 1
    return runs


def _values(module, name, where):
    for group in module.get('value-group') or []:
        if group.get('@name') == name:
            values = []
            for v in group.get('value') or []:
                vname = _attr(v, 'name', f"{where}/value-group[{name}]")
                values.append({
                    'name': vname,
                    'description': _caption(v, vname),
                    'value': _int(v, 'value', f"{where}/value-group[{name}]/{vname}"),
                })
            return values
    raise AtdfError(f"unknown value-group '{name}'", where)


def _fields(register, module, where):
    fields = []
    for bf in register.get('bitfield') or []:
        name = _attr(bf, 'name', where)
        fwhere = f"{where}/{name}"
        mask = _int(bf, 'mask', fwhere)
        runs = maskRuns(mask)
        if not runs:
            raise AtdfError("bitfield has an empty mask", fwhere)
        access = ACCESS.get(bf.get('@rw', ''), 'read-write')
        description = _caption(bf, name)
        if len(runs) == 1:
            field = {
                'name': name,
                'description': description,
                'bitOffset': runs[0][0],
                'bitWidth': runs[0][1],
                'access': access,
            }
            if bf.get('@values'):
                field['enumeratedValues'] = _values(module, bf['@values'], fwhere)
            fields.append(field)
        else:
            # a non-contiguous mask becomes one field per run
            log.debug("%s: splitting mask 0x%X into %d fields", fwhere, mask, len(runs))
            for n, (offset, width) in enumerate(runs):
                fields.append({
                    'name': f"{name}{n}",
                    'description': f"{description} (bits {offset}..{offset + width - 1})",
                    'bitOffset': offset,
                    'bitWidth': width,
                    'access': access,
                })
    fields.sort(key=lambda f: f['bitOffset'])
    return fields


def _findGroup(module, name, where):
    for group in module.get('register-group') or []:
        if group.get('@name') == name:
            return group
    raise AtdfError(f"module {module.get('@name')} has no register-group '{name}'", where)


def _peripheral(instance, module, where):
    """ Build the peripheral for one module instance, or None if it maps no data-space registers. """
    name = _attr(instance, 'name', where)
    where = f"{where}/instance[{name}]"
    registers = []
    for ref in instance.get('register-group') or []:
        if ref.get('@address-space', 'data') != 'data':
            continue
        group_name = ref.get('@name-in-module') or _attr(ref, 'name', where)
        group = _findGroup(module, group_name, where)
        base = _int(ref, 'offset', where, default='0')
        for reg in group.get('register') or []:
            rname = _attr(reg, 'name', f"{where}/{group_name}")
            rwhere = f"{where}/{group_name}/{rname}"
            size = _int(reg, 'size', rwhere, default='1') * 8
            r = {
                'name': rname,
                'description': _caption(reg, rname),
                'addressOffset': base + _int(reg, 'offset', rwhere),
                'size': size,
                'access': ACCESS.get(reg.get('@rw', ''), 'read-write'),
            }
            if reg.get('@initval') is not None:
                r['resetValue'] = _int(reg, 'initval', rwhere)
            if reg.get('@mask') is not None:
                r['resetMask'] = _int(reg, 'mask', rwhere)
            r['fields'] = _fields(reg, module, rwhere)
            registers.append(r)
    if not registers:
        return None

    baseAddress = min(r['addressOffset'] for r in registers)
    for r in registers:
        r['addressOffset'] -= baseAddress
    registers.sort(key=lambda r: (r['addressOffset'], r['name']))
    return {
        'name': name,
        'description': _caption(instance, _caption(module, name)),
        'groupName': module.get('@name'),
        'baseAddress': baseAddress,
        'registers': registers,
    }


def _assignInterrupts(peripherals, interrupts):
    """ Attach each interrupt to the peripheral it belongs to. """
    if not peripherals:
        return
    byName = {p['name']: p for p in peripherals}
    fallback = byName.get('CPU', peripherals[0])
    for intr in interrupts:
        owner = byName.get(intr.pop('module-instance', None))
        if owner is None:
            owner = byName.get(intr['name'].split('_')[0], fallback)
        owner.setdefault('interrupts', []).append(intr)


def _removeUnsafeCpuRegs(chip):
    for p in chip['peripherals']:
        if p['name'] == 'CPU':
            p['registers'] = [r for r in p['registers'] if r['name'] not in UNSAFE_CPU_REGS]


FIXUPS = {
    'remove_unsafe_cpu_regs': _removeUnsafeCpuRegs,
}


def parse(source, patches=frozenset()):
    """Parse an ATDF document (path or binary file object) into the chip model.

    patches names built-in fix-ups from FIXUPS to apply to the result.
    """
    unknown = set(patches) - set(FIXUPS)
    if unknown:
        raise AtdfError(f"unknown fix-up(s): {', '.join(sorted(unknown))}")
    if hasattr(source, 'read'):
        text = source.read()
    else:
        with open(source, 'rb') as f:
            text = f.read()
    try:
        root = xmltodict.parse(text, force_list=REPEATED)
    except ExpatError as e:
        raise AtdfError(f"malformed XML: {e}") from e

    tool = (root or {}).get('avr-tools-device-file')
    if not isinstance(tool, dict):
        raise AtdfError("not an ATDF document (no <avr-tools-device-file> root)")
    devices = (tool.get('devices') or {}).get('device') or []
    if len(devices) != 1:
        raise AtdfError(f"expected exactly one <device>, found {len(devices)}", 'devices')
    device = devices[0]
    dname = _attr(device, 'name', 'device')
    architecture = device.get('@architecture', '')

    modules = {}
    for m in (tool.get('modules') or {}).get('module') or []:
        modules[_attr(m, 'name', 'modules')] = m

    chip = {
        'name': dname,
        'description': f"{dname} ({device.get('@family', architecture)})",
        'architecture': architecture,
        'family': device.get('@family', ''),
        'series': device.get('@family') or None,
        'width': 8 if architecture.upper().startswith('AVR') else 32,
        'peripherals': [],
    }
    for ref in (device.get('peripherals') or {}).get('module') or []:
        mname = _attr(ref, 'name', f"device[{dname}]/peripherals")
        where = f"device[{dname}]/module[{mname}]"
        if mname not in modules:
            raise AtdfError(f"unknown module '{mname}'", where)
        for instance in ref.get('instance') or []:
            per = _peripheral(instance, modules[mname], where)
            if per is not None:
                chip['peripherals'].append(per)

    interrupts = []
    for intr in (device.get('interrupts') or {}).get('interrupt') or []:
        iname = _attr(intr, 'name', f"device[{dname}]/interrupts")
        entry = {
            'name': iname,
            'description': _caption(intr, iname),
            'value': _int(intr, 'index', f"device[{dname}]/interrupts/{iname}"),
        }
        if intr.get('@module-instance'):
            entry['module-instance'] = intr['@module-instance']
        interrupts.append(entry)
    _assignInterrupts(chip['peripherals'], interrupts)

    for name in sorted(patches):
        FIXUPS[name](chip)
    log.debug("%s: %d peripherals, %d interrupts", dname, len(chip['peripherals']), len(interrupts))
    return chip
