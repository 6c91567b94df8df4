from __future__ import annotations

from haspbridge.cli.main import main

main()
