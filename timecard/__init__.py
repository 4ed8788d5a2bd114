"""timecard package.

Avoid importing the FastAPI app at module import time so store and identity
imports (e.g. timecard.store) do not read the environment or build a backend.
"""

__all__ = ["app"]


def __getattr__(name: str):
    if name == "app":
        from timecard.app import app

        return app
    raise AttributeError(f"module 'timecard' has no attribute {name!r}")
