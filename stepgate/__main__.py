"""Allow ``python -m stepgate``."""

import sys

from stepgate.cli import main

sys.exit(main())
