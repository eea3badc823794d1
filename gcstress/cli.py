# Copyright (c) Facebook, Inc. and its affiliates

import argparse
import re
import sys
import time
import traceback

from . import garbage, memstat
from .log import dbg, log, set_verbose

description = '''
Stress the interpreter's memory manager. Prints memory statistics, churns
through short-lived allocations on a thread pool while pinning about 1% of
them to fragment the heap, then prints the statistics again.
'''

RED = '\033[31m'
RESET = '\033[0m'

parser = argparse.ArgumentParser(formatter_class=argparse.RawDescriptionHelpFormatter,
                                 description=description,
                                 add_help=False, allow_abbrev=False)
parser.add_argument('--verbose', '-v', action='count', default=0,
                    help='Debug output on stderr, repeat for more')

def cpu_target():
    return 'x64' if sys.maxsize > 2**32 else 'x86'

def gc_mode():
    # free-threaded builds report whether the GIL got turned back on
    gil_enabled = getattr(sys, '_is_gil_enabled', None)
    if gil_enabled is not None and not gil_enabled():
        return 'Server'
    return 'Workstation'

def application():
    start = time.monotonic()

    log(f'CPU Target: {cpu_target()}')
    log(f'GC Mode: {gc_mode()}')
    log()

    memstat.print_memory_statistics()

    log('Generating garbage:')
    kept = garbage.generate_garbage()
    log(f'- Kept {len(kept):,} objects alive')
    log()

    memstat.print_memory_statistics()

    log(f'Completed in {time.monotonic() - start:,.1f} seconds')

def split_args(argv):
    """Separate the exact verbosity flags from everything else, which is
    accepted and ignored."""
    verbose, ignored = [], []
    for arg in argv:
        if arg == '--verbose' or re.fullmatch(r'-v+', arg):
            verbose.append(arg)
        else:
            ignored.append(arg)
    return verbose, ignored

def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    verbose, ignored = split_args(argv)
    args = parser.parse_args(verbose)
    set_verbose(args.verbose)
    if ignored:
        dbg(f'ignoring arguments {ignored}')

    try:
        application()
    except Exception:
        print(f'{RED}ERROR: {traceback.format_exc().rstrip()}{RESET}', flush=True)
        return 1
    return 0
