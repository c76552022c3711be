from stepflow.db.base import Base
from stepflow.db import models  # noqa: F401  ensure models are loaded


def test_metadata_contains_core_tables() -> None:
    table_names = set(Base.metadata.tables.keys())
    expected = {
        "goals",
        "steps",
        "substeps",
    }

    assert expected.issubset(table_names)


def test_steps_carry_generation_key() -> None:
    steps = Base.metadata.tables["steps"]

    assert "generation_key" in steps.columns
    assert "occurrence_index" in steps.columns
