"""Allow ``python -m microforge``."""

import sys

from microforge.cli import main

sys.exit(main())
