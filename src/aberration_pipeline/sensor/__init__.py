"""
aberration_pipeline.sensor
--------------------------
Colour filter arrays and spectral response: Bayer masks, mosaicking,
bilinear demosaicking, a simple RAW noise model, and the quantum-efficiency /
sampling-weight data that maps latent spectral bands to sensor channels.
"""
