"""Aether Admission - founder-quorum invitation approval."""

from .admission_workflow import AdmissionWorkflow

__all__ = ["AdmissionWorkflow"]
