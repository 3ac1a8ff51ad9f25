"""Execution engines built on the sandbox: process baseline, comparison, warm pool."""
