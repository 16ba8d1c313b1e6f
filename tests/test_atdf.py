"""Tests for reading ATDF files into the chip model."""

import io

import pytest

from pacgen.parsers import atdf
from pacgen.parsers.atdf import AtdfError, maskRuns

CPU_ATDF = """<?xml version="1.0"?>
<avr-tools-device-file>
  <devices>
    <device name="ATtiny85" architecture="AVR8" family="tinyAVR">
      <peripherals>
        <module name="CPU">
          <instance name="CPU">
            <register-group name="CPU" name-in-module="CPU" offset="0" address-space="data"/>
          </instance>
        </module>
      </peripherals>
      <interrupts>
        <interrupt index="0" name="RESET"/>
      </interrupts>
    </device>
  </devices>
  <modules>
    <module name="CPU" caption="CPU Registers">
      <register-group name="CPU">
        <register name="SREG" offset="0x5F" size="1"/>
        <register name="SPL" offset="0x5D" size="1"/>
        <register name="GPIOR0" offset="0x31" size="1"/>
      </register-group>
    </module>
  </modules>
</avr-tools-device-file>
"""


def _chip(text):
    return atdf.parse(io.BytesIO(text.encode()))


def _named(entries, name):
    return next(e for e in entries if e['name'] == name)


# ── Device level ────────────────────────────────────────────────────


def test_parse_device(atdf_file) -> None:
    chip = atdf.parse(atdf_file)
    assert chip['name'] == 'ATmega328P'
    assert chip['architecture'] == 'AVR8'
    assert chip['width'] == 8
    assert chip['description'] == 'ATmega328P (megaAVR)'


def test_parse_accepts_file_object(atdf_text) -> None:
    assert _chip(atdf_text)['name'] == 'ATmega328P'


def test_non_data_address_spaces_are_skipped(atdf_file) -> None:
    chip = atdf.parse(atdf_file)
    assert [p['name'] for p in chip['peripherals']] == ['PORTB', 'TC0']


# ── Peripherals and registers ───────────────────────────────────────


def test_base_address_is_lowest_register(atdf_file) -> None:
    chip = atdf.parse(atdf_file)
    portb = _named(chip['peripherals'], 'PORTB')
    assert portb['baseAddress'] == 0x23
    assert portb['groupName'] == 'PORT'
    assert portb['description'] == 'I/O Port B'
    assert [(r['name'], r['addressOffset']) for r in portb['registers']] == [
        ('PINB', 0), ('DDRB', 1), ('PORTB', 2),
    ]


def test_register_attributes(atdf_file) -> None:
    chip = atdf.parse(atdf_file)
    regs = _named(chip['peripherals'], 'PORTB')['registers']
    portb = _named(regs, 'PORTB')
    assert portb['size'] == 8
    assert portb['resetValue'] == 0
    assert portb['resetMask'] == 0xFF
    assert portb['access'] == 'read-write'
    assert _named(regs, 'PINB')['access'] == 'read-only'
    assert 'resetValue' not in _named(regs, 'DDRB')


def test_bitfields_and_values(atdf_file) -> None:
    chip = atdf.parse(atdf_file)
    tc0 = _named(chip['peripherals'], 'TC0')
    assert tc0['baseAddress'] == 0x44
    tccr0b = _named(tc0['registers'], 'TCCR0B')
    assert [f['name'] for f in tccr0b['fields']] == ['CS0', 'FOC0A']
    cs0 = tccr0b['fields'][0]
    assert (cs0['bitOffset'], cs0['bitWidth']) == (0, 3)
    assert [(e['name'], e['value']) for e in cs0['enumeratedValues']] == [
        ('NO_CLOCK_SOURCE_STOPPED', 0), ('RUNNING_NO_PRESCALING', 1), ('RUNNING_CLK_8', 2),
    ]
    foc0a = tccr0b['fields'][1]
    assert (foc0a['bitOffset'], foc0a['bitWidth'], foc0a['access']) == (7, 1, 'write-only')


def test_non_contiguous_mask_is_split(atdf_file) -> None:
    chip = atdf.parse(atdf_file)
    timsk0 = _named(_named(chip['peripherals'], 'TC0')['registers'], 'TIMSK0')
    assert timsk0['addressOffset'] == 0x6E - 0x44
    assert [(f['name'], f['bitOffset'], f['bitWidth']) for f in timsk0['fields']] == [
        ('SPLIT0', 0, 1), ('SPLIT1', 2, 1),
    ]


def test_mask_runs() -> None:
    assert maskRuns(0x07) == [(0, 3)]
    assert maskRuns(0x05) == [(0, 1), (2, 1)]
    assert maskRuns(0xF0F0) == [(4, 4), (12, 4)]
    assert maskRuns(0) == []


# ── Interrupts ──────────────────────────────────────────────────────


def test_interrupt_by_module_instance(atdf_file) -> None:
    chip = atdf.parse(atdf_file)
    tc0 = _named(chip['peripherals'], 'TC0')
    assert tc0['interrupts'] == [
        {'name': 'TIMER0_OVF', 'description': 'Timer/Counter0 Overflow', 'value': 16},
    ]


def test_unowned_interrupts_go_to_first_peripheral(atdf_file) -> None:
    chip = atdf.parse(atdf_file)
    portb = _named(chip['peripherals'], 'PORTB')
    assert [i['name'] for i in portb['interrupts']] == ['RESET', 'PCINT0']


def test_unowned_interrupts_go_to_cpu() -> None:
    chip = _chip(CPU_ATDF)
    cpu = _named(chip['peripherals'], 'CPU')
    assert [i['name'] for i in cpu['interrupts']] == ['RESET']


# ── Fix-ups ─────────────────────────────────────────────────────────


def test_remove_unsafe_cpu_regs() -> None:
    chip = atdf.parse(io.BytesIO(CPU_ATDF.encode()), frozenset(['remove_unsafe_cpu_regs']))
    cpu = _named(chip['peripherals'], 'CPU')
    assert [r['name'] for r in cpu['registers']] == ['GPIOR0']


def test_unknown_fixup() -> None:
    with pytest.raises(AtdfError, match='unknown fix-up'):
        atdf.parse(io.BytesIO(CPU_ATDF.encode()), frozenset(['frobnicate']))


# ── Errors ──────────────────────────────────────────────────────────


def test_malformed_xml() -> None:
    with pytest.raises(AtdfError, match='malformed XML'):
        _chip('<avr-tools-device-file><devices>')


def test_not_an_atdf_document() -> None:
    with pytest.raises(AtdfError, match='not an ATDF document'):
        _chip('<device name="x"/>')


def test_missing_device() -> None:
    with pytest.raises(AtdfError, match='exactly one'):
        _chip('<avr-tools-device-file><devices/></avr-tools-device-file>')


def test_unknown_value_group(atdf_text) -> None:
    with pytest.raises(AtdfError, match="unknown value-group 'MISSING'") as exc:
        _chip(atdf_text.replace('values="CLK_SEL_3BIT_EXT"', 'values="MISSING"'))
    assert 'TCCR0B/CS0' in str(exc.value)


def test_empty_mask(atdf_text) -> None:
    with pytest.raises(AtdfError, match='empty mask'):
        _chip(atdf_text.replace('mask="0x05"', 'mask="0x00"'))


def test_bad_number(atdf_text) -> None:
    with pytest.raises(AtdfError, match='not a number'):
        _chip(atdf_text.replace('offset="0x47"', 'offset="seventy"'))


def test_unknown_module(atdf_text) -> None:
    with pytest.raises(AtdfError, match="unknown module 'TC8'"):
        _chip(atdf_text.replace('<module name="TC8" caption', '<module name="TC16" caption'))
