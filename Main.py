#!/usr/bin/env python3
"""

Usage:
    python Main.py [--team 9999] [--address 10.99.99.2] [--verbose]

Or
    python -m pose_client [--team 9999] [--address 10.99.99.2] [--verbose]
"""

from pose_client.__main__ import main

if __name__ == "__main__":
    main()
