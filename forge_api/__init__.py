"""
Forge API — FastAPI host adapter for the Forge Kernel.
"""
