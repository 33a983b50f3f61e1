"""
aberration_pipeline.optics
--------------------------
Geometric optics of a thick biconvex lens: Sellmeier dispersion, paraxial
imaging properties, a scene of point lights, and a Monte-Carlo style ray
tracer whose hits are densified into irradiance images (simulated PSFs).
"""
