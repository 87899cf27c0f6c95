"""
ucm-forge

Drives claude/codex CLI agents through a staged delivery pipeline:
intake, clarify, specify, decompose, design, implement, verify, ux-review,
polish, integrate, deliver.
"""

__version__ = "0.1.0"
