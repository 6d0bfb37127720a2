#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# EasyTLS - automatic ACME certificates
# Local development entry point
#

import sys

from easytls.main import run

if __name__ == "__main__":
	sys.exit(run())
