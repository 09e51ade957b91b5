"""Allow `python -m chatbridge` to launch the relay."""

import asyncio
import sys

from chatbridge.main import main

sys.exit(asyncio.run(main()))
