"""Procedural ambient textures and alarm tones, synthesized on the fly."""

__version__ = "0.1.0"
