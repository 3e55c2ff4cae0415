"""Submission evaluation pipeline for a small online judge."""

__version__ = "0.1.0"
