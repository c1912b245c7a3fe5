from __future__ import annotations

import asyncio
import logging

from gps_server.server import run


def main() -> int:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        return 0
    except Exception:
        logging.getLogger("gps_server").exception("failed to start servers")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
