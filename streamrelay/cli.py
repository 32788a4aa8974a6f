from __future__ import annotations

import os
import sys

from loguru import logger

from streamrelay.config import STREAMRELAY_HOST, STREAMRELAY_PORT, STREAMRELAY_RELOAD


def run_server(app_obj=None) -> None:
    """Run the Uvicorn server.

    - Reload only when STREAMRELAY_RELOAD is set (never in frozen builds)
    - Reload needs an import string; otherwise the app object is passed
    """
    import uvicorn

    is_frozen = getattr(sys, "frozen", False) or hasattr(sys, "_MEIPASS")
    reload_env = os.environ.get("STREAMRELAY_RELOAD")
    if reload_env is not None:
        reload_flag = reload_env.strip().lower() in ("1", "true", "yes", "on")
    else:
        reload_flag = STREAMRELAY_RELOAD
    reload_flag = reload_flag and not is_frozen

    if reload_flag:
        logger.info("Uvicorn reload enabled (development mode).")
        uvicorn.run(
            "streamrelay.main:app",
            host=STREAMRELAY_HOST,
            port=STREAMRELAY_PORT,
            reload=True,
        )
        return

    if app_obj is None:
        from streamrelay.main import app as app_obj

    logger.info(f"Starting StreamRelay on {STREAMRELAY_HOST}:{STREAMRELAY_PORT}")
    uvicorn.run(app_obj, host=STREAMRELAY_HOST, port=STREAMRELAY_PORT, reload=False)


def main() -> None:
    run_server()


if __name__ == "__main__":
    main()
