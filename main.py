#!/usr/bin/env python3
"""
Main entry point for the radar crawler.
"""

import sys

from radar_crawler.app import main


if __name__ == '__main__':
    sys.exit(main())
