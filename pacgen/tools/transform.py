# Functions to manipulate register lists in place.
import logging
import re
import sys

log = logging.getLogger(__name__)


def _offset(value):
    return value if isinstance(value, int) else int(value, 0)


def renameEntries(array:list, key, pattern:str, replacement):
    """In all entries of array, replace the value of given key using regular expression matching.

    Go through the array, and apply a regex substitution to the given key of each entry.
    Returns the number of entries whose value changed.
    """
    pat = re.compile(pattern)
    changed = 0
    for e in array:
        if key in e:
            new = pat.sub(replacement, e[key])
            if new != e[key]:
                changed += 1
            e[key] = new
    return changed


def createClusterArray(reglist:list, pattern:str, cluster:dict):
    """Convert a register list into a cluster array.

    This can be used to convert a linear list of registers of several identical
    subsystems into a cluster array, by giving a pattern to identify the registers
    that belong to a cluster. For example consider a timer with several
    identical compare channels.

    The pattern given is a regex pattern with two captures:
    - The array index that this register belongs to (must be zero-based numerical)
    - The register name inside the cluster (can't be numerical)

    The initial dict to which the registers will be added is passed in cluster.
    This dict must include the cluster name, and should include a description.

    Returns the modified register list, or None when the registers matched by
    the pattern don't form at least two complete instances starting at index 0.
    """
    pat = re.compile(pattern)

    def indexName(reg):
        match = pat.search(reg['name'])
        if match:
            try:
                return int(match.group(1)), match.group(2)
            except ValueError:
                return int(match.group(2)), match.group(1)
        return None, None

    addressOffset = sys.maxsize
    instances = []
    for r in reglist:
        index, regname = indexName(r)
        if regname:
            while index >= len(instances):
                instances.append([])
            instances[index].append({ 'name': regname, 'reg': r })
            addressOffset = min(addressOffset, _offset(r['addressOffset']))

    if len(instances) < 2 or not all(instances):     # at least 2 instances starting with index 0
        log.warning("Registers matching %s are unsuitable for a cluster", pattern)
        return None

    reg0 = instances[0][0]
    reg1 = next((x for x in instances[1] if x['name'] == reg0['name']), None)
    if reg1 is None:
        log.warning("Registers matching %s differ between instances", pattern)
        return None

    cluster = dict(cluster)
    cluster['name'] += "[%s]"
    cluster['dim'] = len(instances)
    cluster['dimIncrement'] = _offset(reg1['reg']['addressOffset']) - _offset(reg0['reg']['addressOffset'])
    cluster['addressOffset'] = addressOffset
    log.info("Registers %s become cluster array %s: Address offset = %d  Increment = %d  Count = %d",
             pattern, cluster['name'], cluster['addressOffset'], cluster['dimIncrement'], cluster['dim'])

    # move the affected registers from the reglist to the cluster; only index 0 is kept
    cluster['registers'] = []
    registers = []
    for r in reglist:
        index, regname = indexName(r)
        if not regname:
            registers.append(r)
        elif index == 0:
            r['name'] = regname
            if 'displayName' in r:
                r['displayName'] = regname
            r['addressOffset'] = _offset(r['addressOffset']) - cluster['addressOffset']
            cluster['registers'].append(r)
    registers.append(cluster)
    return registers
