from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
  """Attach a single stream handler to the root logger (idempotent)."""
  root = logging.getLogger()
  root.setLevel(getattr(logging, level.upper(), logging.INFO))
  if any(getattr(handler, "_studio_handler", False) for handler in root.handlers):
    return

  handler = logging.StreamHandler()
  handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
  handler._studio_handler = True  # type: ignore[attr-defined]
  root.addHandler(handler)


__all__ = ["configure_logging"]
