"""
Shared fixtures for the gc-stress test suite.

``fake_proc`` builds a miniature /proc and cgroup2 tree under tmp_path and
points the memstat readers at it.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from gcstress import log, memstat  # noqa: E402

STATUS = """\
Name:\tgc-stress
Umask:\t0022
State:\tR (running)
Pid:\t{pid}
VmPeak:\t  409600 kB
VmSize:\t  307200 kB
VmLck:\t       0 kB
VmHWM:\t  204800 kB
VmRSS:\t  102400 kB
RssAnon:\t   81920 kB
RssFile:\t   20480 kB
VmData:\t  153600 kB
VmPTE:\t    2048 kB
VmSwap:\t    1024 kB
Threads:\t1
"""

MEMINFO = """\
MemTotal:       16777216 kB
MemFree:         4194304 kB
MemAvailable:    8388608 kB
HugePages_Total:       0
Hugepagesize:       2048 kB
"""

SMAPS_ROLLUP = """\
55d1c0a00000-7ffd3e5fe000 ---p 00000000 00:00 0                          [rollup]
Rss:              102400 kB
Pss:               90000 kB
Shared_Clean:      10240 kB
Private_Clean:      8192 kB
Private_Dirty:     73728 kB
Swap:               1024 kB
"""


class FakeProc:
    def __init__(self, root):
        self.proc = root / "proc"
        self.cgrp = root / "cgroup"
        self.proc.mkdir()
        self.cgrp.mkdir()

    def add_process(self, pid, comm, status=True, rollup=True):
        d = self.proc / str(pid)
        d.mkdir()
        (d / "comm").write_text(comm + "\n")
        if status:
            (d / "status").write_text(STATUS.format(pid=pid))
        if rollup:
            (d / "smaps_rollup").write_text(SMAPS_ROLLUP)
        return d

    def add_self(self, comm="gc-stress", cgroup=None):
        d = self.add_process("self", comm)
        if cgroup is not None:
            (d / "cgroup").write_text(f"0::{cgroup}\n")
        return d

    def set_meminfo(self, text=MEMINFO):
        (self.proc / "meminfo").write_text(text)

    def add_cgroup(self, path, mem_max, mem_cur):
        d = self.cgrp / path.lstrip("/")
        d.mkdir(parents=True)
        (d / "memory.max").write_text(f"{mem_max}\n")
        (d / "memory.current").write_text(f"{mem_cur}\n")
        return d


@pytest.fixture
def fake_proc(tmp_path, monkeypatch):
    fp = FakeProc(tmp_path)
    monkeypatch.setattr(memstat, "PROC_BASE", str(fp.proc))
    monkeypatch.setattr(memstat, "CGRP_BASE", str(fp.cgrp))
    return fp


@pytest.fixture(autouse=True)
def quiet_log():
    log.set_verbose(0)
    yield
    log.set_verbose(0)
