"""
aberration_pipeline.evaluation
------------------------------
Algorithm registry and batch evaluation over a dataset of images.
"""
