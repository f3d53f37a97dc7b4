"""Audio shielding pipeline: extract -> shield -> recombine, driven by ffmpeg."""

__version__ = "0.3.0"
