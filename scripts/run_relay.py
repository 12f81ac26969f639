#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[relay] controller={os.environ.get('RELAY_HOST', 'localhost')}:{os.environ.get('RELAY_PORT', '9999')} | "
    f"cdp={os.environ.get('RELAY_CDP_HOST', '127.0.0.1')}:{os.environ.get('RELAY_CDP_PORT', '9222')}",
    file=sys.stderr,
)

from agent_servers.relay.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
