#!/usr/bin/env python3
"""
voicetoggle launcher

Entry point for running from a checkout (or a PyInstaller bundle) without
installing the package; bind this script to a hotkey.
"""

import sys
from pathlib import Path

# Add the src directory to Python path
src_dir = Path(__file__).parent / "src"
if src_dir.exists():
    sys.path.insert(0, str(src_dir))

from voicetoggle.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
