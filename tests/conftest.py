"""Pytest configuration — add src/ to sys.path so `aberration_pipeline` imports without installing."""
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
