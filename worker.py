#!/usr/bin/env python3
"""
Root-level worker entry point for deployment.

Runs the Newsdesk RQ worker, or the scheduler with --with-scheduler.
"""

import os
import sys

# Make the newsdesk package importable when run from a checkout
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

if __name__ == '__main__':
    from newsdesk.worker import main

    main()
