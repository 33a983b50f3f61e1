"""
aberration_pipeline.utils
-------------------------
Metrics and evaluation tables, image / array I/O and saved figures.
"""
