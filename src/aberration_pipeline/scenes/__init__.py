"""
aberration_pipeline.scenes
--------------------------
Synthetic disk charts and spectral test scenes.
"""
