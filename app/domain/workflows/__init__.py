"""
Import workflow for Data Intake.

This package holds the six-step import workflow (upload, staging, mapping,
validation, review, deploy): the pure orchestrator that decides transitions
and the runner that performs the storage and database side effects.
"""
