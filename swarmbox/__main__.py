"""Allow ``python -m swarmbox``."""

import sys

from swarmbox.cli import main

sys.exit(main())
