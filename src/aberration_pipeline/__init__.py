"""
aberration_pipeline - chromatic aberration calibration & correction
====================================================================
Research pipeline for lateral chromatic aberration in RAW / hyperspectral
imaging, organized as:
    optics → sensor → scenes → calibration → reconstruction → evaluation

• optics          : thick-lens ray tracing and paraxial lens properties
• sensor          : Bayer mosaics, demosaicking, spectral response data
• scenes          : synthetic disk charts and spectral test scenes
• calibration     : disk fitting and polynomial dispersion models
• reconstruction  : image formation, ADMM solver, regularization weights
• evaluation      : batch runs of algorithms against ground truth
• utils           : metrics, image I/O, plotting

© 2025 Ali Pouya - Aberration Pipeline
"""

__version__ = "0.3.0"
