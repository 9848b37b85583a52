#!/usr/bin/env python
"""Entry point for funnel-runner CLI."""

# Load .env file before anything else
from dotenv import load_dotenv
load_dotenv()

from funnel_runner.core.cli import main

if __name__ == "__main__":
    main()
