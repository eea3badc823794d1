# Copyright (c) Facebook, Inc. and its affiliates

import random
import threading
from concurrent.futures import ThreadPoolExecutor

from .log import dbg, ddbg

TASK_COUNT = 100
ITERATION_COUNT = 100
ARRAY_LENGTH = 100_000
KEEP_PROBABILITY = 0.01
DELIMITER = ';'

INT_BITS = 32
INT_MIN = -(1 << (INT_BITS - 1))

class RetainedSet:
    """Append-only collection shared by all tasks.

    Writers only call add() while the generation phase runs. Readers look at
    the contents after every writer has been joined.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._items = []

    def add(self, item):
        with self._lock:
            self._items.append(item)

    def items(self):
        with self._lock:
            return list(self._items)

    def __len__(self):
        with self._lock:
            return len(self._items)

def random_ints(rand, length):
    # signed 32-bit values
    return [rand.getrandbits(INT_BITS) + INT_MIN for _ in range(length)]

def make_garbage(rand, length=ARRAY_LENGTH):
    values = random_ints(rand, length)
    blob = DELIMITER.join([str(v) for v in values])
    del values
    return [int(piece) for piece in blob.split(DELIMITER)]

def run_task(index, retained, iterations=ITERATION_COUNT,
             length=ARRAY_LENGTH, keep_probability=KEEP_PROBABILITY):
    rand = random.Random(index)
    kept = 0

    for _ in range(iterations):
        parsed = make_garbage(rand, length)
        if rand.random() < keep_probability:
            # pin 1% of the parsed lists to fragment the heap
            retained.add(parsed)
            kept += 1

    ddbg(f'task {index} kept {kept}')
    return kept

def generate_garbage(tasks=TASK_COUNT, iterations=ITERATION_COUNT,
                     length=ARRAY_LENGTH, keep_probability=KEEP_PROBABILITY):
    retained = RetainedSet()

    dbg(f'starting {tasks} tasks x {iterations} iterations of {length} ints')
    with ThreadPoolExecutor() as pool:
        futures = [pool.submit(run_task, t, retained, iterations, length,
                               keep_probability)
                   for t in range(tasks)]
        # result() re-raises the first task failure
        kept = sum(f.result() for f in futures)
    dbg(f'all tasks joined, {kept} lists retained')

    return retained.items()
