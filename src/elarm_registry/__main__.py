#!/usr/bin/env python3
"""
Elarm registry - main entry point for python -m elarm_registry
"""

from .cli import main

if __name__ == "__main__":
    main()
