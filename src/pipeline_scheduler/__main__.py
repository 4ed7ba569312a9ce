"""Allow `python -m pipeline_scheduler` to launch the scheduler CLI."""

import asyncio
import sys

from pipeline_scheduler.main import main

sys.exit(asyncio.run(main()))
