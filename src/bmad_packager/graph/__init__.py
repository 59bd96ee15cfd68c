"""Workflow graph compilation, legacy migration and document rendering."""
