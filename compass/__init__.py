"""Compass Assessment Engine.

Orchestrates governance assessments of Azure estates: delegated credential
handling, Resource Graph inventory, naming and tagging analysis, license
enforcement and durable findings.
"""

__version__ = "0.1.0"
__author__ = "Cloud Governance Team"
