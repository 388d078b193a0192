"""Executable entrypoint for the WhatsApp session worker."""

from __future__ import annotations

import logging
import os

import uvicorn

from config import whatsapp_config


def main() -> None:
    logging.basicConfig(
        level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run(
        "waworker.api:create_app",
        host="0.0.0.0",
        port=whatsapp_config().port,
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
