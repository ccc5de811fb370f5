"""Allow ``python -m oauthsession``."""

import sys

from .cli import main


sys.exit(main())
