"""API services module.

Import services from their modules directly; the orchestrator depends on
every other service here, so nothing is re-exported at package level.
"""
