#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

if os.environ.get("DEBUG"):
    print(
        f"[websource-browser] binary={os.environ.get('WEBSOURCE_BROWSER_BINARY', 'auto')} | "
        f"home={os.environ.get('WEBSOURCE_BROWSER_HOME', '~/.local/lib/websource-browser')} | "
        f"control_port={os.environ.get('WEBSOURCE_BROWSER_CONTROL_PORT', '9320')} | "
        f"idle_timeout={os.environ.get('WEBSOURCE_BROWSER_IDLE_TIMEOUT', '900')}s",
        file=sys.stderr,
    )

from websource.browser.main import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
