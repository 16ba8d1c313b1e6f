"""Tests for the register list transformations."""

from pacgen.tools.transform import createClusterArray, renameEntries


def _regs(*entries):
    return [{'name': name, 'addressOffset': offset} for name, offset in entries]


def test_rename_entries() -> None:
    regs = _regs(('OCR0A', 0), ('OCR0B', 1), ('TCNT0', 2))
    assert renameEntries(regs, 'name', r'^OCR0', 'OCR') == 2
    assert [r['name'] for r in regs] == ['OCRA', 'OCRB', 'TCNT0']


def test_rename_entries_skips_missing_key() -> None:
    regs = [{'name': 'A', 'displayName': 'A_X'}, {'name': 'B'}]
    assert renameEntries(regs, 'displayName', '_X$', '') == 1
    assert regs == [{'name': 'A', 'displayName': 'A'}, {'name': 'B'}]


def test_create_cluster_array() -> None:
    regs = _regs(('CTRL', '0x0'), ('CH0_CFG', '0x10'), ('CH0_VAL', '0x14'),
                 ('CH1_CFG', '0x20'), ('CH1_VAL', '0x24'))
    result = createClusterArray(regs, r'CH(\d+)_(\w+)', {'name': 'CH', 'description': 'Channel'})
    assert result[0] == {'name': 'CTRL', 'addressOffset': '0x0'}
    cluster = result[-1]
    assert cluster['name'] == 'CH[%s]'
    assert cluster['description'] == 'Channel'
    assert (cluster['dim'], cluster['dimIncrement'], cluster['addressOffset']) == (2, 0x10, 0x10)
    assert cluster['registers'] == [
        {'name': 'CFG', 'addressOffset': 0},
        {'name': 'VAL', 'addressOffset': 4},
    ]
    assert len(result) == 2


def test_create_cluster_array_index_after_name() -> None:
    regs = _regs(('CFG_0', 4), ('CFG_1', 8), ('CFG_2', 12))
    result = createClusterArray(regs, r'(\w+)_(\d+)', {'name': 'SLOT'})
    cluster = result[0]
    assert (cluster['dim'], cluster['dimIncrement'], cluster['addressOffset']) == (3, 4, 4)
    assert cluster['registers'] == [{'name': 'CFG', 'addressOffset': 0}]


def test_create_cluster_array_keeps_input_cluster_dict() -> None:
    template = {'name': 'CH'}
    createClusterArray(_regs(('CH0_A', 0), ('CH1_A', 4)), r'CH(\d+)_(\w+)', template)
    assert template == {'name': 'CH'}


def test_create_cluster_array_needs_two_instances() -> None:
    regs = _regs(('CH0_CFG', 0), ('CH0_VAL', 4))
    assert createClusterArray(regs, r'CH(\d+)_(\w+)', {'name': 'CH'}) is None


def test_create_cluster_array_needs_index_zero() -> None:
    regs = _regs(('CH1_CFG', 0), ('CH2_CFG', 4))
    assert createClusterArray(regs, r'CH(\d+)_(\w+)', {'name': 'CH'}) is None


def test_create_cluster_array_mismatched_instances() -> None:
    regs = _regs(('CH0_CFG', 0), ('CH1_VAL', 4))
    assert createClusterArray(regs, r'CH(\d+)_(\w+)', {'name': 'CH'}) is None
