# Copyright (c) Facebook, Inc. and its affiliates

import sys

verbose = 0

def set_verbose(level):
    global verbose
    verbose = level or 0

def ddbg(s):
    if verbose >= 2:
        print(f'DBG: {s}', file=sys.stderr, flush=True)

def dbg(s):
    if verbose >= 1:
        print(f'DBG: {s}', file=sys.stderr, flush=True)

def log(s=''):
    print(s, flush=True)
