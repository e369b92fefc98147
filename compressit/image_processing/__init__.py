"""Single-pass image compression with Pillow."""

from .image_pipeline import ImageCompressionPipeline, fit_size, resolve_output_format  # noqa: F401
