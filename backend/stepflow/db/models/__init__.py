"""ORM models exposed for metadata discovery."""
from stepflow.db.models.goal import Goal
from stepflow.db.models.step import Step
from stepflow.db.models.substep import Substep

__all__ = [
    "Goal",
    "Step",
    "Substep",
]
