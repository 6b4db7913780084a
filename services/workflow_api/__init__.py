"""Workflow automation API service."""
