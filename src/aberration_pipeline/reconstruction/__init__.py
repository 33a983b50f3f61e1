"""
aberration_pipeline.reconstruction
----------------------------------
Latent spectral (or colour) image reconstruction from a single RAW frame:
the sparse image-formation model, an ADMM solver with L1 / L2 priors, the
selection of regularization weights, and patch-wise solving of whole images.
"""
