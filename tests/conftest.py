"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from pacgen.config import BuildConfig

SAMPLE_ATDF = """<?xml version="1.0" encoding="UTF-8"?>
<avr-tools-device-file schema-version="4.0">
  <devices>
    <device name="ATmega328P" architecture="AVR8" family="megaAVR">
      <peripherals>
        <module name="PORT">
          <instance name="PORTB" caption="I/O Port B">
            <register-group name="PORTB" name-in-module="PORTB" offset="0x00" address-space="data"/>
          </instance>
        </module>
        <module name="TC8">
          <instance name="TC0" caption="Timer/Counter0">
            <register-group name="TC0" name-in-module="TC0" offset="0x00" address-space="data"/>
          </instance>
        </module>
        <module name="FUSE">
          <instance name="FUSE">
            <register-group name="FUSE" name-in-module="FUSE" offset="0" address-space="fuses"/>
          </instance>
        </module>
      </peripherals>
      <interrupts>
        <interrupt index="0" name="RESET" caption="External Pin, Power-on Reset"/>
        <interrupt index="3" name="PCINT0" caption="Pin Change Interrupt Request 0"/>
        <interrupt index="16" name="TIMER0_OVF" module-instance="TC0" caption="Timer/Counter0 Overflow"/>
      </interrupts>
    </device>
  </devices>
  <modules>
    <module name="PORT" caption="I/O Port">
      <register-group name="PORTB" caption="I/O Port">
        <register name="PORTB" offset="0x25" size="1" mask="0xFF" initval="0x00" caption="Port B Data Register"/>
        <register name="DDRB" offset="0x24" size="1" mask="0xFF" caption="Port B Data Direction Register"/>
        <register name="PINB" offset="0x23" size="1" mask="0xFF" rw="R" caption="Port B Input Pins"/>
      </register-group>
    </module>
    <module name="TC8" caption="Timer/Counter, 8-bit">
      <register-group name="TC0" caption="Timer/Counter, 8-bit">
        <register name="TCCR0B" offset="0x45" size="1" mask="0xCF" caption="Timer/Counter0 Control Register B">
          <bitfield name="FOC0A" mask="0x80" rw="W" caption="Force Output Compare A"/>
          <bitfield name="CS0" mask="0x07" values="CLK_SEL_3BIT_EXT" caption="Clock Select"/>
        </register>
        <register name="TCCR0A" offset="0x44" size="1" mask="0xF3" caption="Timer/Counter0 Control Register A">
          <bitfield name="WGM0" mask="0x03" caption="Waveform Generation Mode"/>
          <bitfield name="COM0B" mask="0x30" caption="Compare Output Mode B"/>
        </register>
        <register name="OCR0A" offset="0x47" size="1" mask="0xFF" caption="Output Compare Register A"/>
        <register name="TIMSK0" offset="0x6E" size="1" caption="Timer/Counter0 Interrupt Mask Register">
          <bitfield name="SPLIT" mask="0x05" caption="Split enable"/>
        </register>
      </register-group>
      <value-group name="CLK_SEL_3BIT_EXT" caption="Clock Source">
        <value name="NO_CLOCK_SOURCE_STOPPED" value="0x00" caption="No Clock Source (Stopped)"/>
        <value name="RUNNING_NO_PRESCALING" value="0x01" caption="Running, No Prescaling"/>
        <value name="RUNNING_CLK_8" value="0x02" caption="Running, CLK/8"/>
      </value-group>
    </module>
    <module name="FUSE" caption="Fuses">
      <register-group name="FUSE">
        <register name="LOW" offset="0x00" size="1"/>
      </register-group>
    </module>
  </modules>
</avr-tools-device-file>
"""


@pytest.fixture
def atdf_text() -> str:
    return SAMPLE_ATDF


@pytest.fixture
def atdf_file(tmp_path: Path) -> Path:
    path = tmp_path / "atmega328p.atdf"
    path.write_text(SAMPLE_ATDF, encoding="utf-8")
    return path


@pytest.fixture
def project(tmp_path: Path) -> BuildConfig:
    """A project root with vendor/ and patch/ directories and no features enabled."""
    (tmp_path / "vendor").mkdir()
    (tmp_path / "patch").mkdir()
    return BuildConfig(root=tmp_path, out_dir=tmp_path / "build")
