"""Allow ``python -m tooltunnel``."""

import sys

from tooltunnel.cli import main

sys.exit(main())
