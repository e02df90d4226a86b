"""Command-line entry point.

Run once to start recording, run again to stop and transcribe.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from .common.logs import configure_logging
from .common.settings import get_settings_path, load_settings, save_settings
from .toggle import Toggle

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voicetoggle",
        description="Toggle voice recording; the second run transcribes to the clipboard.",
    )
    parser.add_argument("--config", type=Path, help="settings file (JSON)")
    parser.add_argument("-v", "--verbose", action="store_true", help="log to stderr too")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--start", action="store_const", dest="action", const="start",
                       help="start recording unless already recording")
    group.add_argument("--stop", action="store_const", dest="action", const="stop",
                       help="stop and transcribe; do nothing when idle")
    group.add_argument("--status", action="store_true", help="print whether a recording is open")
    group.add_argument("--devices", action="store_true", help="list audio input devices")
    group.add_argument("--write-config", action="store_true",
                       help="write the effective settings to the settings file")
    parser.set_defaults(action="toggle")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)

    if args.devices:
        from .probe import list_input_devices

        for name in list_input_devices():
            print(name)
        return 0
    if args.write_config:
        path = args.config or get_settings_path()
        save_settings(settings, path)
        print(path)
        return 0

    configure_logging(settings.work_path() / "voicetoggle.log", verbose=args.verbose)
    toggle = Toggle(settings)
    if args.status:
        session = toggle.status()
        if session is None:
            print("idle")
        else:
            print(f"recording {session.base_id} ({session.capture_format} {session.capture_rate} Hz)")
        return 0

    try:
        return toggle.run(args.action)
    except KeyboardInterrupt:
        logger.warning("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
