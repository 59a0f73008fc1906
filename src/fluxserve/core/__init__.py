"""Core job orchestration and image handling for FluxServe.

Architecture Overview
---------------------
1. **Configuration** (config.py): Pydantic Settings, ``FLUXSERVE_`` prefix.
2. **Requests** (request.py): immutable request with normalised views.
3. **Codec** (codec.py): image files ↔ rasters ↔ float tensors, latent
   packing.
4. **Engine** (engine.py): step-wise FLUX inference through diffusers.
5. **Jobs** (job_store.py, progress.py, dispatcher.py, retention.py):
   the asynchronous job lifecycle.

The API layer imports from the submodules directly; nothing heavy (torch,
diffusers) is imported by this package at import time.
"""
