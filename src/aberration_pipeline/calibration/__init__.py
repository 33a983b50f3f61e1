"""
aberration_pipeline.calibration
-------------------------------
Dispersion calibration from images of disk targets: blob detection and
centre estimation, disparity statistics, polynomial dispersion models and
the warps they induce on images of any size.
"""
