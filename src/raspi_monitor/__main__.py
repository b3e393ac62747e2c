"""Allow ``python -m raspi_monitor``."""

import sys

from raspi_monitor.daemon import main

sys.exit(main())
