"""Database utilities and models."""

from stepflow.db.base import Base
from stepflow.db import models  # noqa: F401  (imported for side effects)

__all__ = ["Base"]
