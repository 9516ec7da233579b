"""Allow ``python -m clinic_scan`` to launch the scanner CLI."""

from __future__ import annotations

import sys


def main() -> None:
    from clinic_scan import run

    sys.exit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
