"""
Roomview - Asset Preparation & Render Orchestration Engine

Turns merchant product photos into cutout assets and shopper room photos
into finished composites by coordinating object storage and external
generative-AI providers.
"""

__version__ = "1.0.0"
