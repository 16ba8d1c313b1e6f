"""
Apply YAML patch files to SVD documents.

A patch file is a YAML mapping. Keys starting with an underscore are
commands; every other key is a peripheral specification whose value holds
the commands and register specifications for the matching peripherals, and
so on down to fields:

  _include: [common.yaml]       # merged into this patch, relative paths
  _delete: [USI*]               # peripherals
  _modify:
    description: Fixed device description
    PORT?:
      groupName: PORT
  _add:
    GPIO:
      description: General purpose I/O registers
      baseAddress: 0x3E
      registers:
        GPIOR0:
          addressOffset: 0
          size: 8
  _derive:
    PORTC: PORTB

  TC0:
    _strip: [TCCR0]
    _rename:
      - target: registers
        pattern: '^OCR0'
        replacement: 'OCR'
    _cluster_array:
      CH:
        pattern: 'CH(\\d+)_(\\w+)'
        description: Compare channel
    TCCR*:
      _modify:
        WGM0:
          description: Waveform generation mode
      CS0:
        Stopped: [0, No clock source]
        Direct:  [1, Clock without prescaling]
      OCR:   [0, 255]               # write constraint range

Specifications are glob patterns, comma separated alternatives or brace
expansions ("PORT{B,C,D}").
"""

import copy
import fnmatch
import logging
import os.path
import re
from fnmatch import fnmatchcase

import xmltodict
from braceexpand import braceexpand
from jsonschema import Draft202012Validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError
from xml.parsers.expat import ExpatError

from pacgen.tools import transform

log = logging.getLogger(__name__)

PATCH_EXTENSION = '.yaml'

DEVICE_CHILDREN = [
    'vendor',
    'vendorID',
    'name',
    'series',
    'version',
    'description',
    'licenseText',
    'headerSystemFilename',
    'headerDefinitionsPrefix',
    'addressUnitBits',
    'width',
    'size',
    'access',
    'protection',
    'resetValue',
    'resetMask',
]

# CMSIS-SVD element order, used to keep patched documents schema conformant
DEVICE_ORDER = DEVICE_CHILDREN[:6] + ['licenseText', 'cpu'] + DEVICE_CHILDREN[7:] + ['peripherals', 'vendorExtensions']
PERIPHERAL_ORDER = [
    'dim', 'dimIncrement', 'dimIndex', 'name', 'version', 'description', 'alternatePeripheral',
    'groupName', 'prependToName', 'appendToName', 'headerStructName', 'disableCondition',
    'baseAddress', 'size', 'access', 'protection', 'resetValue', 'resetMask', 'addressBlock',
    'interrupt', 'registers',
]
CLUSTER_ORDER = [
    'dim', 'dimIncrement', 'dimIndex', 'name', 'description', 'alternateCluster', 'headerStructName',
    'addressOffset', 'size', 'access', 'protection', 'resetValue', 'resetMask', 'register', 'cluster',
]
REGISTER_ORDER = [
    'dim', 'dimIncrement', 'dimIndex', 'name', 'displayName', 'description', 'alternateGroup',
    'alternateRegister', 'addressOffset', 'size', 'access', 'protection', 'resetValue', 'resetMask',
    'dataType', 'modifiedWriteValues', 'writeConstraint', 'readAction', 'fields',
]
FIELD_ORDER = [
    'dim', 'dimIncrement', 'dimIndex', 'name', 'description', 'bitOffset', 'bitWidth', 'lsb', 'msb',
    'bitRange', 'access', 'modifiedWriteValues', 'writeConstraint', 'readAction', 'enumeratedValues',
]

# elements that may repeat, so that xmltodict always hands us lists
REPEATED = (
    'peripheral', 'register', 'cluster', 'field', 'interrupt',
    'addressBlock', 'enumeratedValues', 'enumeratedValue',
)

_STRING_LIST = {'type': 'array', 'items': {'type': 'string'}}
_COMMAND_KEY = '^[^_]'

_REGISTER_SCHEMA = {
    'type': 'object',
    'properties': {
        '_delete': _STRING_LIST,
        '_modify': {'type': 'object', 'additionalProperties': {'type': 'object'}},
        '_add': {'type': 'object', 'additionalProperties': {'type': 'object'}},
        '_strip': _STRING_LIST,
        '_strip_end': _STRING_LIST,
    },
    'patternProperties': {_COMMAND_KEY: {'type': ['object', 'array']}},
    'additionalProperties': False,
}

_PERIPHERAL_SCHEMA = {
    'type': 'object',
    'properties': {
        '_delete': {'type': ['array', 'object']},
        '_modify': {'type': 'object', 'additionalProperties': {'type': 'object'}},
        '_add': {'type': 'object', 'additionalProperties': {'type': 'object'}},
        '_strip': _STRING_LIST,
        '_strip_end': _STRING_LIST,
        '_rename': {
            'type': 'array',
            'items': {
                'type': 'object',
                'required': ['target', 'pattern', 'replacement'],
                'properties': {
                    'target': {'enum': ['registers', 'fields', 'interrupts']},
                    'field': {'type': 'string'},
                    'pattern': {'type': 'string'},
                    'replacement': {'type': 'string'},
                },
            },
        },
        '_cluster_array': {
            'type': 'object',
            'additionalProperties': {
                'type': 'object',
                'required': ['pattern'],
                'properties': {
                    'pattern': {'type': 'string'},
                    'description': {'type': 'string'},
                },
            },
        },
    },
    'patternProperties': {_COMMAND_KEY: _REGISTER_SCHEMA},
    'additionalProperties': False,
}

PATCH_SCHEMA = {
    'type': 'object',
    'properties': {
        '_path': {'type': 'string'},
        '_svd': {'type': 'string'},
        '_include': _STRING_LIST,
        '_delete': _STRING_LIST,
        '_copy': {
            'type': 'object',
            'additionalProperties': {
                'type': 'object',
                'required': ['from'],
                'properties': {'from': {'type': 'string'}},
            },
        },
        '_modify': {
            'type': 'object',
            'properties': {
                **{child: {} for child in DEVICE_CHILDREN},
                'cpu': {'type': 'object'},
                '_peripherals': {'type': 'object', 'additionalProperties': {'type': 'object'}},
            },
            'additionalProperties': {'type': 'object'},
        },
        '_add': {'type': 'object', 'additionalProperties': {'type': 'object'}},
        '_derive': {'type': 'object', 'additionalProperties': {'type': 'string'}},
    },
    'patternProperties': {_COMMAND_KEY: _PERIPHERAL_SCHEMA},
    'additionalProperties': False,
}


class SvdPatchError(ValueError):
    pass


class MissingFieldError(SvdPatchError):
    pass


class MissingRegisterError(SvdPatchError):
    pass


class MissingPeripheralError(SvdPatchError):
    pass


# ═══════════════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════

def matchname(name, spec):
    """Check if name matches against a specification."""
    if spec.startswith('_'):
        return False
    if '{' in spec:
        return any(fnmatchcase(name, subspec) for subspec in braceexpand(spec))
    return any(fnmatchcase(name, subspec) for subspec in spec.split(','))


def create_regex_from_pattern(substr, strip_end):
    """Create regex from pattern to match start or end of string."""
    regex = fnmatch.translate(substr)
    # make matching non-greedy
    regex = re.sub('\\*', '*?', regex)
    # change to start of string search
    if not strip_end:
        regex = '^' + re.sub('\\\\Z$', '', regex)
    return re.compile(regex)


def abspath(frompath, relpath):
    """Gets the absolute path of relpath from the point of view of frompath."""
    basepath = os.path.realpath(os.path.join(os.path.abspath(frompath), os.pardir))
    return os.path.normpath(os.path.join(basepath, relpath))


def svd_text(value):
    """Render a YAML scalar as SVD element text."""
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def to_int(text):
    return text if isinstance(text, int) else int(str(text), 0)


def children(element, key):
    """Return the list of repeated child elements, creating it when absent."""
    if element.get(key) is None:
        element[key] = []
    return element[key]


def container(element, key):
    """Return a wrapper element such as <registers> or <fields>, creating it when absent."""
    if element.get(key) is None:
        element[key] = {}
    return element[key]


def sort_element(element, order):
    """Reorder the keys of element to follow the SVD schema order."""
    rank = {k: i for i, k in enumerate(order)}
    items = sorted(
        element.items(),
        key=lambda kv: (0, 0) if kv[0].startswith('@') else (1, rank.get(kv[0], len(order))),
    )
    element.clear()
    element.update(items)


def field_offset_width(field):
    """Return the (bitOffset, bitWidth) of a field in any of the SVD notations."""
    if 'bitOffset' in field:
        return to_int(field['bitOffset']), to_int(field.get('bitWidth', 1))
    if 'lsb' in field and 'msb' in field:
        lsb, msb = to_int(field['lsb']), to_int(field['msb'])
        return lsb, msb - lsb + 1
    if 'bitRange' in field:
        msb, lsb = (int(x, 0) for x in field['bitRange'].strip('[]').split(':'))
        return lsb, msb - lsb + 1
    raise SvdPatchError('field {} has no bit position'.format(field.get('name')))


def sorted_fields(fields):
    return sorted(fields, key=lambda f: field_offset_width(f)[0])


def update_dict(parent, child):
    """
    Recursively merge child.key into parent.key, with parent overriding.
    """
    for key in child:
        if key in ('_path', '_include'):
            continue
        elif key in parent:
            if isinstance(parent[key], list):
                parent[key] += child[key]
            elif isinstance(parent[key], dict):
                update_dict(parent[key], child[key])
        else:
            parent[key] = child[key]


def _read_yaml(path):
    yaml = YAML(typ='safe')
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.load(f)
    except YAMLError as e:
        raise SvdPatchError('unable to parse {}: {}'.format(path, e)) from e
    except OSError as e:
        raise SvdPatchError('unable to read {}: {}'.format(path, e)) from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SvdPatchError('{}: a patch file must contain a mapping'.format(path))
    return data


def yaml_includes(parent, seen=None):
    """Recursively load any included YAML files into parent."""
    seen = set() if seen is None else seen
    included = []
    for relpath in parent.get('_include', []):
        path = abspath(parent['_path'], relpath)
        if path in seen:
            continue
        seen.add(path)
        child = _read_yaml(path)
        child['_path'] = path
        included.append(path)
        included += yaml_includes(child, seen)
        update_dict(parent, child)
    return included


def validate_patch(patch):
    """Check the shape of a patch against PATCH_SCHEMA."""
    validator = Draft202012Validator(PATCH_SCHEMA)
    errors = sorted(validator.iter_errors(patch), key=lambda e: list(e.path))
    if errors:
        lines = []
        for e in errors:
            loc = '/'.join(str(p) for p in e.path) or '(root)'
            lines.append('at {}: {}'.format(loc, e.message))
        raise SvdPatchError('invalid patch {}:\n  {}'.format(patch.get('_path', ''), '\n  '.join(lines)))


def load_patch(path):
    """Load a patch file, resolve its includes and validate it."""
    path = str(path)
    patch = _read_yaml(path)
    patch['_path'] = path
    included = yaml_includes(patch)
    if included:
        log.debug('%s includes %s', path, ', '.join(included))
    validate_patch(patch)
    return patch


def make_write_constraint(wc_range):
    """Given a (min, max), returns a writeConstraint element."""
    return {'range': {'minimum': str(wc_range[0]), 'maximum': str(wc_range[1])}}


def make_enumerated_values(name, values, usage='read-write'):
    """
    Given a name and a dict of values which maps variant names to (value,
    description), returns an enumeratedValues element.
    """
    usagekey = {'read': 'R', 'write': 'W'}.get(usage, '')
    variants = {k: v for k, v in values.items() if not k.startswith('_')}
    for vname, v in variants.items():
        if not isinstance(v, list) or len(v) != 2:
            raise SvdPatchError(
                'enumeratedValue {}.{}: expected [value, description]'.format(name, vname)
            )
    if len(set(v[0] for v in variants.values())) != len(variants):
        raise SvdPatchError("enumeratedValue {}: can't have duplicate values".format(name))
    if name[0] in '0123456789':
        raise SvdPatchError("enumeratedValue {}: can't start with a number".format(name))
    ev = {'name': name + usagekey, 'usage': usage, 'enumeratedValue': []}
    for vname, (value, description) in variants.items():
        if vname[0] in '0123456789':
            raise SvdPatchError(
                "enumeratedValue {}.{}: can't start with a number".format(name, vname)
            )
        if not description:
            raise SvdPatchError(
                "enumeratedValue {}: can't have empty description"
                ' for value {}'.format(name, value)
            )
        ev['enumeratedValue'].append(
            {'name': vname, 'description': description, 'value': str(value)}
        )
    return ev


# ═══════════════════════════════════════════════════════════════════════════
# DOCUMENT LEVELS
# ═══════════════════════════════════════════════════════════════════════════

class Device:
    """Methods for processing device contents"""

    def __init__(self, device, path=None):
        self.device = device
        self.path = path

    @property
    def peripherals(self):
        return children(container(self.device, 'peripherals'), 'peripheral')

    def iter_peripherals(self, pspec, check_derived=True):
        """Iterates over all peripherals that match pspec."""
        for ptag in list(self.peripherals):
            if matchname(ptag['name'], pspec):
                if check_derived and '@derivedFrom' in ptag:
                    continue
                yield ptag

    def find_peripheral(self, name):
        return next((p for p in self.peripherals if p['name'] == name), None)

    def modify_child(self, key, val):
        """Modify key inside device and set it to val."""
        self.device[key] = svd_text(val)

    def modify_cpu(self, mod):
        """Modify the cpu element inside device according to mod."""
        cpu = container(self.device, 'cpu')
        for key, val in mod.items():
            cpu[key] = svd_text(val)

    def modify_peripheral(self, pspec, pmod):
        """Modify pspec inside device according to pmod."""
        for ptag in self.iter_peripherals(pspec):
            for key, value in pmod.items():
                if key == 'addressBlock':
                    blocks = children(ptag, 'addressBlock')
                    if not blocks:
                        blocks.append({})
                    for ab_key, ab_value in value.items():
                        blocks[0][ab_key] = svd_text(ab_value)
                elif key == 'addressBlocks':
                    ptag['addressBlock'] = [
                        {k: svd_text(v) for k, v in ab.items()} for ab in value
                    ]
                elif value == '':
                    ptag.pop(key, None)
                else:
                    ptag[key] = svd_text(value)

    def add_peripheral(self, pname, padd):
        """Add pname given by padd to device."""
        if self.find_peripheral(pname) is not None:
            raise SvdPatchError('device already has a peripheral {}'.format(pname))
        pnew = {}
        if 'derivedFrom' in padd:
            pnew['@derivedFrom'] = padd['derivedFrom']
        pnew['name'] = pname
        self.peripherals.append(pnew)
        p = Peripheral(pnew)
        for key, value in padd.items():
            if key == 'registers':
                container(pnew, 'registers')
                for rname in value:
                    p.add_register(rname, value[rname])
            elif key == 'interrupts':
                for iname in value:
                    p.add_interrupt(iname, value[iname])
            elif key == 'addressBlock':
                pnew['addressBlock'] = [{k: svd_text(v) for k, v in value.items()}]
            elif key == 'addressBlocks':
                pnew['addressBlock'] = [
                    {k: svd_text(v) for k, v in ab.items()} for ab in value
                ]
            elif key != 'derivedFrom':
                pnew[key] = svd_text(value)

    def delete_peripheral(self, pspec):
        """Delete peripherals matched by pspec."""
        doomed = [id(p) for p in self.iter_peripherals(pspec, check_derived=False)]
        self.peripherals[:] = [p for p in self.peripherals if id(p) not in doomed]

    def derive_peripheral(self, pname, pderive):
        """
        Remove registers from pname and mark it as derivedFrom pderive.
        Update all derivedFrom referencing pname.
        """
        ptag = self.find_peripheral(pname)
        if ptag is None:
            raise SvdPatchError('peripheral {} not found'.format(pname))
        if self.find_peripheral(pderive) is None:
            raise SvdPatchError('peripheral {} not found'.format(pderive))
        for key in list(ptag):
            if key not in ('name', 'baseAddress', 'interrupt', 'description'):
                del ptag[key]
        ptag['@derivedFrom'] = pderive
        for p in self.peripherals:
            if p.get('@derivedFrom') == pname:
                p['@derivedFrom'] = pderive

    def copy_peripheral(self, pname, pmod):
        """
        Create copy of peripheral, either from this document or from another
        SVD file given as "file.svd:NAME".
        """
        pcopysrc = pmod['from'].split(':')
        pcopyname = pcopysrc[-1]
        if len(pcopysrc) == 2:
            pcopyfile = abspath(self.path, pcopysrc[0])
            with open(pcopyfile, 'rb') as f:
                source = Device(load_document(f.read())['device'])
        else:
            source = self
        found = source.find_peripheral(pcopyname)
        if found is None:
            raise SvdPatchError('peripheral {} not found'.format(pcopyname))
        pcopy = copy.deepcopy(found)

        # When copying from a peripheral in the same file, remove the
        # copied baseAddress and any interrupts.
        if source is self:
            pcopy.pop('interrupt', None)
            pcopy.pop('baseAddress', None)
        pcopy['name'] = pname
        ptag = self.find_peripheral(pname)
        if ptag is not None:
            # When the target already exists, keep its baseAddress and interrupts.
            for key in ('baseAddress', 'interrupt'):
                if key in ptag:
                    pcopy[key] = ptag[key]
            self.peripherals.remove(ptag)
        self.peripherals.append(pcopy)

    def process_peripheral(self, pspec, peripheral):
        """Work through a peripheral, handling all registers."""
        pcount = 0
        for ptag in self.iter_peripherals(pspec, check_derived=False):
            pcount += 1
            Peripheral(ptag).process(peripheral)
        if pcount == 0:
            raise MissingPeripheralError('Could not find {}'.format(pspec))


class Peripheral:
    """Methods for processing peripheral contents"""

    def __init__(self, ptag):
        self.ptag = ptag

    @property
    def name(self):
        return self.ptag['name']

    def register_lists(self):
        """Yield every register list inside the peripheral, clusters included."""
        pending = [self.ptag.get('registers')]
        while pending:
            parent = pending.pop()
            if not parent:
                continue
            if parent.get('register'):
                yield parent['register']
            pending.extend(parent.get('cluster') or [])

    def iter_registers(self, rspec):
        """
        Iterates over all registers that match rspec and live inside ptag.
        """
        for regs in list(self.register_lists()):
            for rtag in list(regs):
                if matchname(rtag['name'], rspec):
                    yield rtag

    def iter_interrupts(self, ispec):
        """Iterates over all interrupts matching ispec"""
        for itag in list(self.ptag.get('interrupt') or []):
            if matchname(itag['name'], ispec):
                yield itag

    def add_interrupt(self, iname, iadd):
        """Add iname given by iadd to ptag."""
        interrupts = children(self.ptag, 'interrupt')
        if any(i['name'] == iname for i in interrupts):
            raise SvdPatchError(
                'peripheral {} already has an interrupt {}'.format(self.name, iname)
            )
        inew = {'name': iname}
        for key, val in iadd.items():
            inew[key] = svd_text(val)
        interrupts.append(inew)

    def modify_interrupt(self, ispec, imod):
        """Modify ispec according to imod"""
        for itag in self.iter_interrupts(ispec):
            for key, value in imod.items():
                if value == '':
                    itag.pop(key, None)
                else:
                    itag[key] = svd_text(value)

    def delete_interrupt(self, ispec):
        """Delete interrupts matched by ispec"""
        doomed = [id(i) for i in self.iter_interrupts(ispec)]
        self.ptag['interrupt'] = [i for i in self.ptag.get('interrupt') or [] if id(i) not in doomed]
        if not self.ptag['interrupt']:
            del self.ptag['interrupt']

    def modify_register(self, rspec, rmod):
        """Modify rspec inside ptag according to rmod."""
        for rtag in self.iter_registers(rspec):
            for key, value in rmod.items():
                if value == '':
                    rtag.pop(key, None)
                else:
                    rtag[key] = svd_text(value)

    def add_register(self, rname, radd):
        """Add rname given by radd to ptag."""
        parent = container(self.ptag, 'registers')
        registers = children(parent, 'register')
        if any(r['name'] == rname for r in registers):
            raise SvdPatchError(
                'peripheral {} already has a register {}'.format(self.name, rname)
            )
        rnew = {'name': rname}
        registers.append(rnew)
        for key, value in radd.items():
            if key == 'fields':
                container(rnew, 'fields')
                for fname in value:
                    Register(rnew).add_field(fname, value[fname])
            else:
                rnew[key] = svd_text(value)

    def delete_register(self, rspec):
        """Delete registers matched by rspec inside ptag."""
        for regs in self.register_lists():
            regs[:] = [r for r in regs if not matchname(r['name'], rspec)]

    def strip(self, substr, strip_end=False):
        """
        Delete substring from register names inside ptag. Strips from the
        beginning of the name by default.
        """
        regex = create_regex_from_pattern(substr, strip_end)
        for rtag in self.iter_registers('*'):
            rtag['name'] = regex.sub('', rtag['name'])
            if rtag.get('displayName'):
                rtag['displayName'] = regex.sub('', rtag['displayName'])

    def rename(self, rule):
        """Apply a regex rename rule to registers, fields or interrupts."""
        key = rule.get('field', 'name')
        target = rule['target']
        if target == 'registers':
            entries = list(self.iter_registers('*'))
        elif target == 'interrupts':
            entries = list(self.iter_interrupts('*'))
        else:
            entries = [f for r in self.iter_registers('*') for f in Register(r).fields]
        changed = transform.renameEntries(entries, key, rule['pattern'], rule['replacement'])
        log.debug('%s: rename %s %r -> %r changed %d entries',
                  self.name, target, rule['pattern'], rule['replacement'], changed)

    def cluster_array(self, cname, cmod):
        """Collect numbered registers into a cluster array."""
        parent = container(self.ptag, 'registers')
        registers = parent.get('register') or []
        cluster = {'name': cname, 'description': cmod.get('description', cname)}
        result = transform.createClusterArray(registers, cmod['pattern'], cluster)
        if result is None:
            raise SvdPatchError(
                '{}: registers matching {} do not form a cluster array'.format(self.name, cmod['pattern'])
            )
        parent['register'] = [r for r in result if 'registers' not in r]
        for c in (r for r in result if 'registers' in r):
            ctag = {
                'dim': str(c['dim']),
                'dimIncrement': hex(c['dimIncrement']),
                'name': c['name'],
                'description': c['description'],
                'addressOffset': hex(c['addressOffset']),
                'register': c['registers'],
            }
            for rtag in ctag['register']:
                rtag['addressOffset'] = hex(rtag['addressOffset'])
            children(parent, 'cluster').append(ctag)

    def process(self, peripheral):
        """Work through the commands and register specs for this peripheral."""
        # For derived peripherals, only process interrupts
        if '@derivedFrom' in self.ptag:
            deletions = peripheral.get('_delete', [])
            if isinstance(deletions, dict):
                for ispec in deletions.get('_interrupts', []):
                    self.delete_interrupt(ispec)
            for ispec, imod in peripheral.get('_modify', {}).get('_interrupts', {}).items():
                self.modify_interrupt(ispec, imod)
            for iname, iadd in peripheral.get('_add', {}).get('_interrupts', {}).items():
                self.add_interrupt(iname, iadd)
            return

        # Handle deletions
        deletions = peripheral.get('_delete', [])
        if isinstance(deletions, list):
            for rspec in deletions:
                self.delete_register(rspec)
        else:
            for rspec in deletions:
                if rspec == '_registers':
                    for spec in deletions[rspec]:
                        self.delete_register(spec)
                elif rspec == '_interrupts':
                    for ispec in deletions[rspec]:
                        self.delete_interrupt(ispec)
                else:
                    self.delete_register(rspec)
        # Handle modifications
        for rspec, rmod in peripheral.get('_modify', {}).items():
            if rspec == '_registers':
                for spec in rmod:
                    self.modify_register(spec, rmod[spec])
            elif rspec == '_interrupts':
                for ispec in rmod:
                    self.modify_interrupt(ispec, rmod[ispec])
            else:
                self.modify_register(rspec, rmod)
        # Handle strips and renames
        for prefix in peripheral.get('_strip', []):
            self.strip(prefix)
        for suffix in peripheral.get('_strip_end', []):
            self.strip(suffix, strip_end=True)
        for rule in peripheral.get('_rename', []):
            self.rename(rule)
        # Handle additions
        for rname, radd in peripheral.get('_add', {}).items():
            if rname == '_registers':
                for name in radd:
                    self.add_register(name, radd[name])
            elif rname == '_interrupts':
                for iname in radd:
                    self.add_interrupt(iname, radd[iname])
            else:
                self.add_register(rname, radd)
        # Handle registers
        for rspec in peripheral:
            if not rspec.startswith('_'):
                self.process_register(rspec, peripheral[rspec])
        # Handle register clusters
        for cname, cmod in peripheral.get('_cluster_array', {}).items():
            self.cluster_array(cname, cmod)

    def process_register(self, rspec, register):
        """Work through a register, handling all fields."""
        rcount = 0
        for rtag in self.iter_registers(rspec):
            rcount += 1
            Register(rtag).process(self.name, register)
        if rcount == 0:
            raise MissingRegisterError('Could not find {}:{}'.format(self.name, rspec))


class Register:
    """Methods for processing register contents"""

    def __init__(self, rtag):
        self.rtag = rtag

    @property
    def name(self):
        return self.rtag['name']

    @property
    def fields(self):
        fields = self.rtag.get('fields')
        return (fields or {}).get('field') or []

    def iter_fields(self, fspec):
        """
        Iterates over all fields that match fspec and live inside rtag.
        """
        for ftag in list(self.fields):
            if matchname(ftag['name'], fspec):
                yield ftag

    def strip(self, substr, strip_end=False):
        """
        Delete substring from bitfield names inside rtag. Strips from the
        beginning of the name by default.
        """
        regex = create_regex_from_pattern(substr, strip_end)
        for ftag in self.fields:
            ftag['name'] = regex.sub('', ftag['name'])

    def modify_field(self, fspec, fmod):
        """Modify fspec inside rtag according to fmod."""
        for ftag in self.iter_fields(fspec):
            for key, value in fmod.items():
                if key == '_write_constraint':
                    key = 'writeConstraint'
                if key == 'writeConstraint':
                    if value == 'none':
                        ftag.pop(key, None)
                    elif value == 'enum':
                        ftag[key] = {'useEnumeratedValues': 'true'}
                    elif isinstance(value, list):
                        ftag[key] = make_write_constraint(value)
                    else:
                        raise SvdPatchError(
                            'Unknown writeConstraint type {}'.format(repr(value))
                        )
                elif value == '':
                    ftag.pop(key, None)
                else:
                    ftag[key] = svd_text(value)

    def add_field(self, fname, fadd):
        """Add fname given by fadd to rtag."""
        fields = children(container(self.rtag, 'fields'), 'field')
        if any(f['name'] == fname for f in fields):
            raise SvdPatchError(
                'register {} already has a field {}'.format(self.name, fname)
            )
        fnew = {'name': fname}
        for key, value in fadd.items():
            fnew[key] = svd_text(value)
        fields.append(fnew)

    def delete_field(self, fspec):
        """Delete fields matched by fspec inside rtag."""
        fields = self.rtag.get('fields')
        if fields and fields.get('field'):
            fields['field'] = [f for f in fields['field'] if not matchname(f['name'], fspec)]

    def process(self, pname, register):
        for fspec in register.get('_delete', []):
            self.delete_field(fspec)
        for fspec, fmod in register.get('_modify', {}).items():
            self.modify_field(fspec, fmod)
        for fname, fadd in register.get('_add', {}).items():
            self.add_field(fname, fadd)
        for prefix in register.get('_strip', []):
            self.strip(prefix)
        for suffix in register.get('_strip_end', []):
            self.strip(suffix, strip_end=True)
        for fspec in register:
            if not fspec.startswith('_'):
                self.process_field(pname, fspec, register[fspec])

    def process_field(self, pname, fspec, field):
        """Work through a field, handling either an enum or a range."""
        if isinstance(field, dict):
            usages = ('_read', '_write')
            if not any(u in field for u in usages):
                self.process_field_enum(pname, fspec, field)
            for usage in (u for u in usages if u in field):
                self.process_field_enum(pname, fspec, field[usage], usage=usage.replace('_', ''))
        elif isinstance(field, list) and len(field) == 2:
            self.process_field_range(pname, fspec, field)
        else:
            raise SvdPatchError(
                '{}:{}.{}: expected an enumeration or a [min, max] range'.format(pname, self.name, fspec)
            )

    def process_field_enum(self, pname, fspec, field, usage='read-write'):
        """Add an enumeratedValues given by field to all fspec in rtag."""
        replace_if_exists = False
        if '_replace_enum' in field:
            field = field['_replace_enum']
            replace_if_exists = True

        fields = sorted_fields(list(self.iter_fields(fspec)))
        if not fields:
            raise MissingFieldError('Could not find {}:{}.{}'.format(pname, self.name, fspec))

        derived = field.get('_derivedFrom')
        for ftag in fields:
            if derived is None:
                enum = make_enumerated_values(ftag['name'], field, usage=usage)
            else:
                enum = {'@derivedFrom': derived}
            kept = []
            for ev in ftag.get('enumeratedValues') or []:
                ev_usage = ev.get('usage', 'read-write')
                if ev_usage == usage or 'read-write' in (ev_usage, usage):
                    if not replace_if_exists:
                        raise SvdPatchError(
                            '{}: field {} already has enumeratedValues for {}'.format(
                                pname, ftag['name'], ev_usage
                            )
                        )
                    continue
                kept.append(ev)
            ftag['enumeratedValues'] = kept + [enum]
            if derived is None:
                # later fields share the first field's enumeration
                derived = enum['name']

    def process_field_range(self, pname, fspec, field):
        """Add a writeConstraint range given by field to all fspec in rtag."""
        set_any = False
        for ftag in self.iter_fields(fspec):
            ftag['writeConstraint'] = make_write_constraint(field)
            set_any = True
        if not set_any:
            raise MissingFieldError('Could not find {}:{}.{}'.format(pname, self.name, fspec))


# ═══════════════════════════════════════════════════════════════════════════
# ENTRY POINTS
# ═══════════════════════════════════════════════════════════════════════════

def load_document(text):
    try:
        doc = xmltodict.parse(text, force_list=REPEATED)
    except ExpatError as e:
        raise SvdPatchError('malformed SVD document: {}'.format(e)) from e
    if not doc or not isinstance(doc.get('device'), dict):
        raise SvdPatchError('document has no <device> element')
    return doc


def dump_document(doc):
    return xmltodict.unparse(doc, pretty=True, indent='  ') + '\n'


def sort_recursive(device):
    """Apply the SVD schema sort order to the device and everything below it."""
    sort_element(device, DEVICE_ORDER)
    for ptag in Device(device).peripherals:
        sort_element(ptag, PERIPHERAL_ORDER)
        pending = [ptag.get('registers')]
        while pending:
            parent = pending.pop()
            if not parent:
                continue
            for ctag in parent.get('cluster') or []:
                sort_element(ctag, CLUSTER_ORDER)
                pending.append(ctag)
            regs = parent.get('register') or []
            regs.sort(key=lambda r: to_int(r.get('addressOffset', 0)))
            for rtag in regs:
                sort_element(rtag, REGISTER_ORDER)
                r = Register(rtag)
                if r.fields:
                    rtag['fields']['field'] = sorted_fields(r.fields)
                    for ftag in rtag['fields']['field']:
                        sort_element(ftag, FIELD_ORDER)


def process_device(device, patch):
    """Work through a device, handling all peripherals"""
    d = Device(device, patch.get('_path'))
    # Handle any deletions
    for pspec in patch.get('_delete', []):
        d.delete_peripheral(pspec)

    # Handle any copied peripherals
    for pname, val in patch.get('_copy', {}).items():
        d.copy_peripheral(pname, val)

    # Handle any modifications
    for key, val in patch.get('_modify', {}).items():
        if key == 'cpu':
            d.modify_cpu(val)
        elif key == '_peripherals':
            for pspec, pmod in val.items():
                d.modify_peripheral(pspec, pmod)
        elif key in DEVICE_CHILDREN:
            d.modify_child(key, val)
        else:
            d.modify_peripheral(key, val)

    # Handle any new peripherals
    for pname, padd in patch.get('_add', {}).items():
        d.add_peripheral(pname, padd)

    # Handle any derived peripherals
    for pname, pderive in patch.get('_derive', {}).items():
        d.derive_peripheral(pname, pderive)

    # Now process all peripherals
    for pspec in patch:
        if not pspec.startswith('_'):
            d.process_peripheral(pspec, patch[pspec])

    sort_recursive(device)


def process(text, patch):
    """Apply patch to SVD text and return the patched SVD text."""
    doc = load_document(text)
    try:
        process_device(doc['device'], patch)
    except SvdPatchError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise SvdPatchError('malformed SVD or patch: {!r}'.format(e)) from e
    return dump_document(doc)


def process_file(svd_path, patch):
    """Apply patch to the SVD file at svd_path and return the patched SVD text."""
    with open(svd_path, 'rb') as f:
        return process(f.read(), patch)
