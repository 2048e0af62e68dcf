"""
Backend Scripts Module

This module contains maintenance scripts for the workflow core.

Available scripts:
    - recalculate_workflows.py: Recalculates the live workflows of a definition

Usage:
    python -m scripts.recalculate_workflows --definition NAME
"""
