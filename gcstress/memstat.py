# Copyright (c) Facebook, Inc. and its affiliates
"""Allocator and process memory counters.

The readers below are Linux specific: they parse /proc, the cgroup2 tree and
query glibc through ctypes. Everything from MemorySnapshot down is platform
independent and only deals with byte counts.
"""

import ctypes
import ctypes.util
import gc
import os
import re
import sys
import tempfile
from collections import namedtuple

from .log import dbg, log

MIB = 1 << 20
HIGH_MEMORY_LOAD_RATIO = 0.9
PROC_BASE = '/proc'
CGRP_BASE = '/sys/fs/cgroup'

class PlatformError(Exception):
    pass

def check_platform():
    if not sys.platform.startswith('linux'):
        raise PlatformError(f'memory counters are not supported on {sys.platform}')

#
# /proc and cgroup readers
#
def read_lines(path):
    with open(path, 'r', encoding='utf-8') as f:
        lines = f.read().strip().split('\n')
        if len(lines) == 1 and not len(lines[0]):
            return []
        return lines

def read_first_line(path):
    return read_lines(path)[0]

def int_or_max(v, max_val):
    if v == 'max':
        return max_val
    return int(v)

# "VmRSS:     1234 kB" style files, values returned in bytes
def read_kb_fields(path):
    fields = {}
    for line in read_lines(path):
        toks = line.split()
        if len(toks) == 3 and toks[0].endswith(':') and toks[2] == 'kB':
            fields[toks[0][:-1]] = int(toks[1]) * 1024
    return fields

def require(fields, key, path):
    if key not in fields:
        raise PlatformError(f'"{key}" missing from {path}')
    return fields[key]

def read_meminfo():
    return read_kb_fields(f'{PROC_BASE}/meminfo')

def read_process_status(pid='self'):
    path = f'{PROC_BASE}/{pid}/status'
    st = read_kb_fields(path)
    return {
        'paged': require(st, 'VmSwap', path),
        'paged_system': require(st, 'VmPTE', path),
        'private': require(st, 'VmData', path),
        'virtual': require(st, 'VmSize', path),
        'working_set': require(st, 'VmRSS', path),
        'peak_paged': require(st, 'VmPeak', path),
        'peak_working_set': require(st, 'VmHWM', path),
        'committed': require(st, 'RssAnon', path),
    }

def cgroup_dir(pid='self'):
    # cgroup2 only, the unified hierarchy shows up as "0::/path"
    try:
        lines = read_lines(f'{PROC_BASE}/{pid}/cgroup')
    except FileNotFoundError:
        return None
    for line in lines:
        toks = line.split(':', 2)
        if len(toks) == 3 and toks[0] == '0' and toks[1] == '':
            return CGRP_BASE + toks[2].rstrip('/')
    return None

def read_cgroup_memory(cgrp):
    """Return (memory.max, memory.current) for @cgrp, or None if either
    knob is missing. memory.max is None when unlimited."""
    if cgrp is None:
        return None
    try:
        mem_max = int_or_max(read_first_line(f'{cgrp}/memory.max'), None)
        mem_cur = int(read_first_line(f'{cgrp}/memory.current'))
    except FileNotFoundError:
        return None
    return mem_max, mem_cur

def read_memory_limits():
    """Return (total_available, memory_load, high_load_threshold) in bytes."""
    path = f'{PROC_BASE}/meminfo'
    mi = read_meminfo()
    mem_total = require(mi, 'MemTotal', path)
    mem_load = mem_total - require(mi, 'MemAvailable', path)

    cgrp = cgroup_dir()
    cgmem = read_cgroup_memory(cgrp)
    if cgmem is not None and cgmem[0] is not None and cgmem[0] < mem_total:
        dbg(f'memory limited by {cgrp} to {cgmem[0]}')
        mem_total = cgmem[0]
        mem_load = cgmem[1]

    return (mem_total, max(mem_load, 0),
            int(mem_total * HIGH_MEMORY_LOAD_RATIO))

def process_name(pid='self'):
    return read_first_line(f'{PROC_BASE}/{pid}/comm')

def find_pid_by_name(name):
    """Look up a pid by image name the way per-process performance counters
    are addressed. Our own pid wins when several processes share the name."""
    pids = []
    for ent in os.listdir(PROC_BASE):
        if not ent.isdigit():
            continue
        try:
            if process_name(ent) == name:
                pids.append(int(ent))
        except (FileNotFoundError, ProcessLookupError, PermissionError):
            # exited while we were scanning
            continue

    if not pids:
        raise PlatformError(f'no process named "{name}"')
    if os.getpid() in pids:
        return os.getpid()
    return min(pids)

def read_private_working_set(name):
    pid = find_pid_by_name(name)
    path = f'{PROC_BASE}/{pid}/smaps_rollup'
    rollup = read_kb_fields(path)
    return (require(rollup, 'Private_Clean', path) +
            require(rollup, 'Private_Dirty', path))

#
# glibc malloc introspection
#
class MallInfo2(ctypes.Structure):
    _fields_ = [(name, ctypes.c_size_t) for name in (
        'arena', 'ordblks', 'smblks', 'hblks', 'hblkhd',
        'usmblks', 'fsmblks', 'uordblks', 'fordblks', 'keepcost')]

class MallInfo(ctypes.Structure):
    # declared int in malloc.h, read unsigned so values past 2G stay positive
    _fields_ = [(name, ctypes.c_uint) for name, _ in MallInfo2._fields_]

_libc = None

def libc():
    global _libc

    if _libc is None:
        check_platform()
        path = ctypes.util.find_library('c')
        lib = ctypes.CDLL(path)
        if not hasattr(lib, 'malloc_trim'):
            raise PlatformError(f'{path} is not glibc, malloc_trim() unavailable')
        lib.malloc_trim.argtypes = [ctypes.c_size_t]
        lib.malloc_trim.restype = ctypes.c_int
        _libc = lib
    return _libc

def mallinfo():
    lib = libc()
    if hasattr(lib, 'mallinfo2'):
        lib.mallinfo2.restype = MallInfo2
        return lib.mallinfo2()
    # glibc < 2.33, counters wrap past 4G
    lib.mallinfo.restype = MallInfo
    return lib.mallinfo()

#
# pymalloc introspection
#
# Small objects live in pymalloc arenas, which are mmapped outside malloc.
# sys._debugmallocstats() is the only place their totals are exposed and it
# writes straight to the C-level stderr.
PymallocStats = namedtuple('PymallocStats', ['allocated', 'available', 'arenas'])

PYMALLOC_PATTERNS = {
    'allocated': re.compile(r'^# bytes in allocated blocks\s*=\s*([\d,]+)\s*$'),
    'available': re.compile(r'^# bytes in available blocks\s*=\s*([\d,]+)\s*$'),
    'arenas': re.compile(r'^\d+ arenas \* \d+ bytes/arena\s*=\s*([\d,]+)\s*$'),
}

def parse_pymalloc_stats(text):
    """Pull the pymalloc totals out of _debugmallocstats() output. Zero when
    the section is missing, e.g. under PYTHONMALLOC=malloc where objects go
    through malloc and mallinfo() already counts them."""
    values = dict.fromkeys(PYMALLOC_PATTERNS, 0)
    for line in text.split('\n'):
        for key, pat in PYMALLOC_PATTERNS.items():
            m = pat.match(line.strip())
            if m:
                values[key] = int(m.group(1).replace(',', ''))
    return PymallocStats(**values)

def read_pymalloc_stats():
    if not hasattr(sys, '_debugmallocstats'):
        raise PlatformError(f'{sys.implementation.name} has no sys._debugmallocstats()')

    with tempfile.TemporaryFile() as tf:
        sys.stderr.flush()
        saved = os.dup(2)
        try:
            os.dup2(tf.fileno(), 2)
            sys._debugmallocstats()
        finally:
            os.dup2(saved, 2)
            os.close(saved)
        tf.seek(0)
        text = tf.read().decode('utf-8', 'replace')

    return parse_pymalloc_stats(text)

def read_allocator_info():
    """Return (in_use, heap_size, fragmented) in bytes, malloc and pymalloc
    combined."""
    mi = mallinfo()
    pm = read_pymalloc_stats()
    dbg(f'malloc in use {mi.uordblks + mi.hblkhd}, pymalloc allocated '
        f'{pm.allocated} of {pm.arenas} arena bytes')

    in_use = mi.uordblks + mi.hblkhd + pm.allocated
    heap_size = mi.arena + mi.hblkhd + pm.arenas
    fragmented = mi.fordblks + pm.available
    return in_use, heap_size, fragmented

def force_collection():
    """Full blocking collection of every generation, then give free heap
    pages back to the kernel once."""
    collected = gc.collect()
    released = libc().malloc_trim(0)
    dbg(f'gc.collect() freed {collected} objects, malloc_trim()={released}')

#
# Snapshot and report
#
MemorySnapshot = namedtuple('MemorySnapshot', [
    'total_memory', 'heap_size', 'total_committed', 'total_available',
    'fragmented', 'memory_load', 'high_memory_load_threshold',
    'paged', 'paged_system', 'private', 'virtual', 'working_set',
    'peak_paged', 'peak_working_set', 'private_working_set'])

STAT_LABELS = [
    ('GC GetTotalMemory', 'total_memory'),
    ('GC Info HeapSizeBytes', 'heap_size'),
    ('GC Info TotalCommittedBytes', 'total_committed'),
    ('GC Info TotalAvailableMemoryBytes', 'total_available'),
    ('GC Info FragmentedBytes', 'fragmented'),
    ('GC Info MemoryLoadBytes', 'memory_load'),
    ('GC Info HighMemoryLoadThresholdBytes', 'high_memory_load_threshold'),
    ('Process PagedMemorySize', 'paged'),
    ('Process PagedSystemMemorySize', 'paged_system'),
    ('Process PrivateMemorySize', 'private'),
    ('Process VirtualMemorySize', 'virtual'),
    ('Process WorkingSet', 'working_set'),
    ('Process PeakPagedMemorySize', 'peak_paged'),
    ('Process PeakWorkingSet', 'peak_working_set'),
    ('Task Manager Working Set', 'private_working_set'),
]

def capture():
    """Read every counter without collecting first."""
    check_platform()
    in_use, heap_size, fragmented = read_allocator_info()
    total_available, memory_load, high_load = read_memory_limits()
    st = read_process_status()
    private_ws = read_private_working_set(process_name())

    return MemorySnapshot(
        total_memory=in_use,
        heap_size=heap_size,
        total_committed=st['committed'],
        total_available=total_available,
        fragmented=fragmented,
        memory_load=memory_load,
        high_memory_load_threshold=high_load,
        paged=st['paged'],
        paged_system=st['paged_system'],
        private=st['private'],
        virtual=st['virtual'],
        working_set=st['working_set'],
        peak_paged=st['peak_paged'],
        peak_working_set=st['peak_working_set'],
        private_working_set=private_ws)

def snapshot():
    force_collection()
    return capture()

def to_mib(nbytes):
    # halves round up
    return (nbytes + MIB // 2) // MIB

def format_statistics(snap):
    lines = ['Memory statistics:']
    for label, field in STAT_LABELS:
        lines.append(f'- {label}: {to_mib(getattr(snap, field)):,} MiB')
    lines.append('')
    return lines

def print_memory_statistics():
    for line in format_statistics(snapshot()):
        log(line)
