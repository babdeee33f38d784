"""
`python -m companion_bridge.worker` 入口。
"""

from __future__ import annotations

import sys

from companion_bridge.worker.server import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
