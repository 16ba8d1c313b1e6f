# Generate the C++ register binding header for a chip from its SVD description.
#
# This generator expects that the formatting is going to be fine tuned with clang-format or a similar tool.
# There is no point in trying to please everyone with the formatting done here, when there are much better
# tools that can be configured to conform with arbitrary formatting wishes.
#
# Every peripheral model gets its own namespace holding the bitfield structs, the enumerations and the
# register block struct `Registers`. A struct can have the same name as a struct member; the member takes
# precedence, so the register types are referred to as `struct <name>` inside the register block.
#
# Derived peripherals don't get a model of their own, their instance pointer uses the model of the
# peripheral they are derived from.

import contextlib
import logging
import re
from dataclasses import dataclass
from enum import Enum
from itertools import pairwise
from string import Template
from typing import NamedTuple, Optional

from pacgen.tools import svd as svdtool

log = logging.getLogger(__name__)


class Target(Enum):
    NONE = 'none'
    CORTEX_M = 'cortex-m'
    AVR = 'avr'


# exception number of the first device interrupt
INTERRUPT_OFFSET = {
    Target.NONE: 0,
    Target.CORTEX_M: 16,
    Target.AVR: 0,
}

IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

CXX_KEYWORDS = frozenset("""
    alignas alignof and asm auto bool break case catch char class const constexpr continue default delete
    do double else enum explicit export extern false float for friend goto if inline int long mutable
    namespace new noexcept not nullptr operator or private protected public register return short signed
    sizeof static struct switch template this throw true try typedef typename union unsigned using virtual
    void volatile while xor
""".split())


class GeneratorError(Exception):
    pass


@dataclass
class Config:
    target: Target = Target.NONE
    make_mod: bool = False
    generic_mod: bool = False
    strict: bool = False
    log_level: Optional[str] = None

    def __post_init__(self):
        self.target = Target(self.target)


class Generation(NamedTuple):
    device: str
    header: str


class ChipFormatter:
    def __init__(self, **keywords):
        self.enumTemplate      = Template(keywords.get('enum'     , '\n\t/** $description */\n\t$name = $value,'))
        self.enumsTemplate     = Template(keywords.get('enums'    , '\ninline namespace ${name}_ {\nEXPORT enum $name : $type {$enums\n};\n} // namespace ${name}_\n'))
        self.regEnumsTemplate  = Template(keywords.get('regEnums' , '\ninline namespace ${name}_ {$enums} // namespace ${name}_\n'))
        self.bitfieldTemplate  = Template(keywords.get('bitfield' , '\n\t/** $description */\n\t$type $name:$width;'))
        self.resBitsTemplate   = Template(keywords.get('resBits'  , '\n\t$type _$res:$width;\t// reserved'))
        self.typeTemplate      = Template(keywords.get('type'     , 'HwReg<$type>'))
        self.resBytesTemplate  = Template(keywords.get('resBytes' , '\n\tstd::uint8_t _$res[$bytes];\t// reserved'))
        self.fieldTemplate     = Template(keywords.get('field'    , '\n\t/** $description */\n\t$type $name;'))
        self.fieldsTemplate    = Template(keywords.get('fields'   , '\n/** $description */\nEXPORT struct $name {$fields\n};\n'))
        self.registersTemplate = Template(keywords.get('registers', '\n$types\n/** $description */\nEXPORT struct $name {$regs\n}; // size = $size\n'))
        self.modelTemplate     = Template(keywords.get('model', """
/** $description */
namespace $name {$enums
$types
/** $description */
EXPORT struct Registers {$regs
}; // size = $size

} // namespace $name
"""))
        self.instanceTemplate  = Template(keywords.get('instance' , '\n/** $description */\nEXPORT inline constexpr HwPtr<$model::Registers> i_$name{${address}u};\n'))
        self.interruptTemplate = Template(keywords.get('interrupt', '\n\t/** $description */\n\t$name = $value,'))
        self.interruptsTemplate= Template(keywords.get('interrupts', """
/** Interrupt vectors */
EXPORT enum Interrupt : std::uint16_t {$ints
};

EXPORT constexpr std::uint16_t interruptOffset = $offset;\t//!< Exception number of first interrupt
"""))

    def formatEnumList(self, enums:list):
        """ Generate enumerator list """
        list = []
        for enum in enums:
            value = enum.get('value', 1)
            description = enum.get('description', enum['name'])
            list.append(self.enumTemplate.substitute(enum, value=value, description=description))
        return ''.join(list)

    def formatFieldList(self, fields:list, type:str):
        """ Generate bitfield list
        Returns:
        - the formatted list of bitfields as a multiline string
        - the formatted list of enum definitions as a multiline string
        """
        list = []
        for field in fields:
            enum = ''
            if field.get('enumeratedValues'):
                txt = self.formatEnumList(field['enumeratedValues'])
                enum = self.enumsTemplate.substitute(field, enums=txt, type=type)
            width = field.get('bitWidth', 1)
            description = field.get('description', field['name'])
            txt = self.bitfieldTemplate.substitute(field, type=type, width=width, description=description)
            list.append([txt, field['bitOffset'], width, enum])

        list.sort(key=lambda f:f[1])    # sort fields according to increasing offset
        txt = ''
        enums = ''
        res = 0
        pos = 0
        for line, offset, width, enum in list:
            enums += enum
            if offset > pos:
                txt += self.resBitsTemplate.substitute(type=type, res=res, width=offset-pos)
                res += 1
                pos = offset
            txt += line
            pos += width
        return txt, enums

    def formatRegisterList(self, reglist:list, padToSize:int, defaultSize:int):
        """ Generate structs and instances for a list of registers
        Returns four values (in this order):
        1. All the type definitions for the registers as a multiline string
        2. The formatted list of registers as a multiline string
        3. The size of the register list in the address space of the controller
        4. The list of enumeration definitions
        """
        enums = ''
        structs = ''
        list = []
        for reg in reglist:
            addressOffset = reg['addressOffset']
            description = reg.get('description', reg['name'])
            dim = reg.get('dim', 1)
            if 'registers' in reg:
                name = reg['name'].replace('[%s]', '')
                padSize = reg.get('dimIncrement', 0)
                types, regs, size, enum = self.formatRegisterList(reg['registers'], padSize, defaultSize)
                enums += enum
                structs += self.registersTemplate.substitute(name=name, regs=regs, types=types, description=description, size=size)
                names = reg['name'] % dim if '%s' in reg['name'] else reg['name']
                line = self.fieldTemplate.substitute(name=names, type='struct ' + name, description=description)
                list.append([line, addressOffset, size*dim])
            else:
                dimIndex = reg.get('dimIndex', "")
                name = reg['name'].replace('[%s]', '').replace('%s', '')
                names = name
                if dimIndex:
                    names = ",".join(reg['name'] % item for item in dimIndex.split(","))
                elif dim > 1 and '%s' in reg['name']:
                    names = reg['name'] % dim
                size = reg.get('size', defaultSize)
                type = reg.get('dataType', 'std::uint%s_t' % size)
                regType = type
                if reg.get('fields'):
                    fields, enum = self.formatFieldList(reg['fields'], type)
                    enums += self.regEnumsTemplate.substitute(reg, name=name, enums=enum) if enum else ''
                    structs += self.fieldsTemplate.substitute(reg, name=name, fields=fields, description=description)
                    regType = 'struct ' + name
                line = self.fieldTemplate.substitute(reg, name=names, type=self.typeTemplate.substitute(type=regType), description=description)
                list.append([line, addressOffset, (size>>3)*dim])

        list.sort(key=lambda r:r[1])
        list.append(['', 0xFFFFFFFF, 0])     # dummy
        txt = ''
        res = 0
        pos = 0
        union = False
        unionEnd = 0
        for this, following in pairwise(list):
            if this[1] > pos:
                txt += self.resBytesTemplate.substitute(res=res, bytes=this[1]-pos)
                res += 1
                pos = this[1]
            if not union and this[1] == following[1]:
                union = True
                unionEnd = pos
                txt += '\n\tunion {'
            txt += this[0]
            if union:
                unionEnd = max(unionEnd, this[1] + this[2])
                if this[1] != following[1]:
                    union = False
                    txt += '\n\t};'
                    pos = unionEnd
            else:
                pos += this[2]
        if padToSize > pos:
            txt += self.resBytesTemplate.substitute(res=res, bytes=padToSize-pos)
            pos = padToSize
        return structs, txt, pos, enums

    def formatModel(self, name:str, per:dict, defaultSize:int):
        """ Generate the namespace with all definitions for a peripheral model """
        types, regs, size, enums = self.formatRegisterList(per['registers'], 0, defaultSize)
        description = per.get('description', name)
        return self.modelTemplate.substitute(name=name, enums=enums, types=types, regs=regs, size=size, description=description)

    def formatInstances(self, instances:dict):
        """ Generate the instance pointers, sorted according to base address """
        txt = ''
        for name, inst in sorted(instances.items(), key=lambda i: (i[1]['baseAddress'], i[0])):
            description = inst.get('description') or name
            txt += self.instanceTemplate.substitute(name=name, model=inst['model'], address='%#x' % inst['baseAddress'], description=description)
        return txt

    def formatInterrupts(self, peripherals:list, offset:int):
        """ Generate the interrupt enumeration """
        ints = ''
        seen = set()
        for i in sorted((i for p in peripherals for i in p.get('interrupts', [])), key=lambda i: (i['value'], i['name'])):
            if i['name'] in seen:    # shared by several peripherals
                continue
            seen.add(i['name'])
            ints += self.interruptTemplate.substitute(name=i['name'], value=i['value'] + offset, description=i.get('description', i['name']))
        return self.interruptsTemplate.substitute(ints=ints, offset=offset)


prefixTemplate = Template("""// File was generated, do not edit!
#pragma once
$include
#include <cstdint>
#include <type_traits>

#undef EXPORT
#define EXPORT

namespace $ns {
""")

modulePrefixTemplate = Template("""// File was generated, do not edit!
#ifdef REGISTERS_MODULE
module;
#define EXPORT export
#else
#pragma once
$include
#undef EXPORT
#define EXPORT
#endif

#include <cstdint>
#include <type_traits>

#ifdef REGISTERS_MODULE
export module $mod;
$imp
#endif

namespace $ns {
""")

postfixTemplate = Template("""
} // namespace $ns

#undef EXPORT
""")

genericSource = """
/** Memory mapped register holding a value of type T (an integer or a bitfield struct). */
EXPORT template <typename T>
union HwReg {
\tusing raw_type = std::conditional_t<sizeof(T) == 1, std::uint8_t,
\t                 std::conditional_t<sizeof(T) == 2, std::uint16_t, std::uint32_t>>;
\tT bits;
\traw_type raw;

\traw_type read() const volatile { return raw; }
\tvoid write(raw_type value) volatile { raw = value; }
\ttemplate <typename F>
\tvoid modify(F &&f) volatile { T v = const_cast<T const &>(bits); f(v); const_cast<T &>(bits) = v; }
};

/** Pointer to a peripheral register block of type T at a fixed address. */
EXPORT template <typename T>
struct HwPtr {
\tstd::uintptr_t address;

\tT volatile *operator->() const { return reinterpret_cast<T volatile *>(address); }
\tT volatile &operator*() const { return *operator->(); }
};
"""


def _baseName(name:str):
    return name.replace('[%s]', '').replace('%s', '')


def _identifier(name:str):
    """ Turn name into a valid C++ identifier, keeping a dim placeholder """
    suffix = '[%s]' if name.endswith('[%s]') else ('%s' if '%s' in name else '')
    base = re.sub(r'\W', '_', _baseName(name))
    if not base or base[0].isdigit() or base in CXX_KEYWORDS:
        base = '_' + base
    return base + suffix


def _badName(name):
    base = _baseName(name or '')
    return not IDENTIFIER.match(base) or base in CXX_KEYWORDS


def _walkRegisters(reglist:list):
    for reg in reglist:
        if 'registers' in reg:
            yield from _walkRegisters(reg['registers'])
        else:
            yield reg


def check(device:dict):
    """ Return a list of problems that keep the device from mapping cleanly onto C++ """
    problems = []
    defaultSize = device.get('size', 32)
    peripherals = device['peripherals']
    names = [p['name'] for p in peripherals]
    for name in sorted(set(n for n in names if names.count(n) > 1)):
        problems.append(f"duplicate peripheral {name}")
    for per in peripherals:
        pname = per['name']
        if _badName(pname):
            problems.append(f"invalid peripheral name {pname!r}")
        for reglist in [per['registers']] + [c['registers'] for c in per['registers'] if 'registers' in c]:
            rnames = [_baseName(r['name']) for r in reglist]
            for rname in sorted(set(n for n in rnames if rnames.count(n) > 1)):
                problems.append(f"{pname}: duplicate register {rname}")
        for reg in _walkRegisters(per['registers']):
            where = f"{pname}.{reg['name']}"
            if _badName(reg['name']):
                problems.append(f"invalid register name {where!r}")
            size = reg.get('size', defaultSize)
            end = 0
            fnames = set()
            for field in reg.get('fields') or []:
                fwhere = f"{where}.{field['name']}"
                if _badName(field['name']):
                    problems.append(f"invalid field name {fwhere!r}")
                if field['name'] in fnames:
                    problems.append(f"duplicate field {fwhere}")
                fnames.add(field['name'])
                if field['bitOffset'] < end:
                    problems.append(f"field {fwhere} overlaps a preceding field")
                end = max(end, field['bitOffset'] + field['bitWidth'])
                if field['bitOffset'] + field['bitWidth'] > size:
                    problems.append(f"field {fwhere} exceeds the {size} bit register")
                values = set()
                for e in field.get('enumeratedValues') or []:
                    if _badName(e['name']):
                        problems.append(f"invalid enumerator name {fwhere}.{e['name']!r}")
                    if e['value'] in values:
                        problems.append(f"duplicate enumerated value {e['value']} in {fwhere}")
                    values.add(e['value'])
        for intr in per.get('interrupts', []):
            if _badName(intr['name']):
                problems.append(f"invalid interrupt name {pname}.{intr['name']!r}")
    return problems


def sanitize(device:dict):
    """ In place, replace all names by valid C++ identifiers """
    for per in device['peripherals']:
        per['name'] = _identifier(per['name'])
        if 'headerStructName' in per:
            per['headerStructName'] = _identifier(per['headerStructName'])
        if '@derivedFrom' in per:
            per['@derivedFrom'] = _identifier(per['@derivedFrom'])
        for intr in per.get('interrupts', []):
            intr['name'] = _identifier(intr['name'])
        pending = list(per['registers'])
        while pending:
            reg = pending.pop()
            reg['name'] = _identifier(reg['name'])
            pending.extend(reg.get('registers') or [])
            for field in reg.get('fields') or []:
                field['name'] = _identifier(field['name'])
                for e in field.get('enumeratedValues') or []:
                    e['name'] = _identifier(e['name'])


@contextlib.contextmanager
def _logLevel(level):
    if level is None:
        yield
        return
    lvl = logging.getLevelName(str(level).upper())
    if not isinstance(lvl, int):
        raise GeneratorError(f"unknown log level {level!r}")
    previous = log.level
    log.setLevel(lvl)
    try:
        yield
    finally:
        log.setLevel(previous)


def namespaceName(name:str):
    return _identifier(name.lower())


def generate(svd, config:Optional[Config]=None):
    """ Generate the binding header for the SVD document (text or bytes).

    Returns a Generation with the device name and the header text.
    Raises GeneratorError when the document can't be turned into a header.
    """
    config = config or Config()
    with _logLevel(config.log_level):
        offset = INTERRUPT_OFFSET[config.target]
        try:
            device = svdtool.collateDevice(svdtool.parseString(svd), offset)
        except svdtool.SvdError as e:
            raise GeneratorError(str(e)) from e
        if not device.get('name'):
            raise GeneratorError("device has no name")
        try:
            txt = _render(device, config, offset)
        except svdtool.SvdError as e:
            raise GeneratorError(str(e)) from e
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise GeneratorError(f"{device['name']}: malformed device description: {e!r}") from e
    return Generation(device=device['name'], header=txt)


def _render(device:dict, config:Config, offset:int):
    problems = check(device)
    if problems and config.strict:
        raise GeneratorError(f"{device['name']}: " + "; ".join(problems))
    for p in problems:
        log.warning("%s: %s", device['name'], p)
    if problems:
        sanitize(device)

    models, instances = svdtool.collectModelsAndInstances(device['peripherals'])

    fmt = ChipFormatter()
    ns = namespaceName(device['name'])
    include = '' if config.generic_mod else '#include "registers.hpp"'
    if config.make_mod:
        imp = '' if config.generic_mod else 'import registers;'
        txt = modulePrefixTemplate.substitute(ns=ns, mod=ns, include=include, imp=imp)
    else:
        txt = prefixTemplate.substitute(ns=ns, include=include)
    if config.generic_mod:
        txt += genericSource
    if config.target != Target.NONE:
        txt += fmt.formatInterrupts(device['peripherals'], offset)

    defaultSize = device.get('size', 32)
    for name, per in models.items():
        log.debug("%s: model %s with %d registers", device['name'], name, len(per['registers']))
        txt += fmt.formatModel(name, per, defaultSize)
    txt += fmt.formatInstances(instances)
    txt += postfixTemplate.substitute(ns=ns)
    log.debug("%s: generated %d models for %d instances", device['name'], len(models), len(instances))
    return txt
