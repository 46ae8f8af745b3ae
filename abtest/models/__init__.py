"""Database models."""
from abtest.models.experiment import ExperimentDB, VariantDB
from abtest.models.assignment import AssignmentDB, ConversionDB

__all__ = ["ExperimentDB", "VariantDB", "AssignmentDB", "ConversionDB"]
