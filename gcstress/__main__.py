# Copyright (c) Facebook, Inc. and its affiliates

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
