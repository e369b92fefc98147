"""
Image Compression Pipeline
Single-pass Pillow encode: orientation fix, optional resize, metadata trim,
format-specific mode conversion and palette quantization, then measurement
"""

import os
import io
import logging
from dataclasses import replace
from typing import Dict, Any, List, Optional, Tuple

from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from ..encoding_profiles import EncodingProfileResolver
from ..errors import CompressionError, EncodeFailure, IOFailure
from ..models import (CompressionResult, EncoderProfile, ImageCompressionRequest,
                      ImageFormat, ResizeBounds)

logger = logging.getLogger(__name__)

EXIF_ORIENTATION_TAG = 0x0112

# Pillow format name -> output format used when the request says "original"
SOURCE_FORMATS = {
    'JPEG': ImageFormat.JPEG,
    'MPO': ImageFormat.JPEG,
    'PNG': ImageFormat.PNG,
    'WEBP': ImageFormat.WEBP,
    'GIF': ImageFormat.GIF,
}

METADATA_FORMATS = {ImageFormat.JPEG, ImageFormat.PNG, ImageFormat.WEBP}
ANIMATED_FORMATS = {ImageFormat.GIF, ImageFormat.WEBP}
JPEG_BACKGROUND = (255, 255, 255)


def resolve_output_format(requested: ImageFormat, source_format: Optional[str]) -> ImageFormat:
    """Concrete output format; 'original' follows the source and unknown sources become jpeg"""
    if requested != ImageFormat.ORIGINAL:
        return requested
    return SOURCE_FORMATS.get((source_format or '').upper(), ImageFormat.JPEG)


def fit_size(size: Tuple[int, int], bounds: Optional[ResizeBounds]) -> Tuple[int, int]:
    """
    Target dimensions for a resize request; never larger than the source.

    With keep_aspect_ratio the image fits inside the given box (a missing side
    is unconstrained). Without it each requested side is filled independently.
    """
    width, height = size
    if bounds is None or (not bounds.width and not bounds.height):
        return size

    if not bounds.keep_aspect_ratio:
        return (min(bounds.width, width) if bounds.width else width,
                min(bounds.height, height) if bounds.height else height)

    scales = [1.0]
    if bounds.width:
        scales.append(bounds.width / width)
    if bounds.height:
        scales.append(bounds.height / height)
    scale = min(scales)
    if scale >= 1.0:
        return size
    return max(1, round(width * scale)), max(1, round(height * scale))


class ImageCompressionPipeline:
    """Compresses one in-memory image per call; holds no per-request state"""

    def __init__(self, resolver: Optional[EncodingProfileResolver] = None,
                 max_input_bytes: Optional[int] = None):
        self.resolver = resolver or EncodingProfileResolver()
        self.max_input_bytes = max_input_bytes

    def compress_file(self, source_path: str, request: ImageCompressionRequest) -> CompressionResult:
        """Read an image from disk, compress it, and write it to request.output_path when set"""
        try:
            with open(source_path, 'rb') as file:
                buffer = file.read()
        except OSError as e:
            error = IOFailure(f"Cannot read source image: {e}", context=source_path)
            logger.error(error.describe())
            return CompressionResult.failure(error)

        if not request.source_name:
            request = replace(request, source_name=os.path.basename(source_path))
        return self.compress(buffer, request)

    def compress(self, image_buffer: bytes, request: ImageCompressionRequest) -> CompressionResult:
        original_size = len(image_buffer) if image_buffer is not None else 0
        try:
            result = self._compress(image_buffer, request, original_size)
        except CompressionError as e:
            logger.error(f"Image compression failed for {request.source_name or '<buffer>'}: {e.describe()}")
            return CompressionResult.failure(e, original_size=original_size)

        logger.info(f"{request.source_name or 'image'}: {result.describe()}")
        return result

    def _compress(self, image_buffer: bytes, request: ImageCompressionRequest,
                  original_size: int) -> CompressionResult:
        if not image_buffer:
            raise IOFailure("Image buffer is empty", context=request.source_name or None)
        if self.max_input_bytes and original_size > self.max_input_bytes:
            raise IOFailure(f"Image is larger than the {self.max_input_bytes} byte input limit",
                            context=request.source_name or None)

        source = self._open(image_buffer, request)
        with source:
            output_format = resolve_output_format(request.output_format, source.format)
            profile = self.resolver.resolve_image(request.quality, output_format)
            original_dimensions = source.size

            icc_profile = source.info.get('icc_profile')
            animated = getattr(source, 'is_animated', False) and output_format in ANIMATED_FORMATS
            if animated:
                frames, save_extra = self._prepare_animation(source, request.resize, profile, output_format)
                exif = None
            else:
                oriented = ImageOps.exif_transpose(source)
                exif = self._strip_orientation(oriented)
                resized = self._resize(oriented, request.resize)
                frames, save_extra = [self._convert_mode(resized, profile, output_format)], {}

        data = self._encode(frames, profile, output_format, exif, icc_profile, save_extra)
        location = self._write(data, request.output_path)
        return CompressionResult.success(
            original_size, len(data), location,
            attempts=1,
            output_format=output_format.value,
            dimensions=frames[0].size,
            original_dimensions=original_dimensions,
            data=data,
        )

    @staticmethod
    def _open(image_buffer: bytes, request: ImageCompressionRequest) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(image_buffer))
            image.load()
            return image
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
            raise IOFailure(f"Unreadable image: {e}", context=request.source_name or None) from e

    @staticmethod
    def _strip_orientation(image: Image.Image) -> Optional[bytes]:
        """EXIF without the orientation tag, since the pixels are already upright"""
        exif = image.getexif()
        if EXIF_ORIENTATION_TAG in exif:
            del exif[EXIF_ORIENTATION_TAG]
        return exif.tobytes() if len(exif) else None

    @staticmethod
    def _resize(image: Image.Image, bounds: Optional[ResizeBounds]) -> Image.Image:
        new_size = fit_size(image.size, bounds)
        if new_size == image.size:
            return image
        logger.debug(f"Resizing {image.size[0]}x{image.size[1]} -> {new_size[0]}x{new_size[1]}")
        return image.resize(new_size, Image.Resampling.LANCZOS)

    @staticmethod
    def _flatten(image: Image.Image) -> Image.Image:
        """Composite transparency onto white for formats without alpha"""
        rgba = image.convert('RGBA')
        background = Image.new('RGB', rgba.size, JPEG_BACKGROUND)
        background.paste(rgba, mask=rgba.getchannel('A'))
        return background

    def _convert_mode(self, image: Image.Image, profile: EncoderProfile,
                      output_format: ImageFormat) -> Image.Image:
        has_alpha = image.mode in ('RGBA', 'LA', 'PA') or \
            (image.mode == 'P' and 'transparency' in image.info)

        if output_format == ImageFormat.JPEG:
            if has_alpha:
                return self._flatten(image)
            return image if image.mode in ('RGB', 'L', 'CMYK') else image.convert('RGB')

        if profile.palette_colors:
            return self._quantize(image, profile.palette_colors, has_alpha)

        if output_format == ImageFormat.WEBP:
            return image.convert('RGBA' if has_alpha else 'RGB') if image.mode not in ('RGB', 'RGBA') else image

        # Lossless png keeps its mode; palette and 16-bit sources are widened to 8-bit RGB(A)
        if image.mode in ('RGB', 'RGBA', 'L', 'LA'):
            return image
        return image.convert('RGBA' if has_alpha else 'RGB')

    @staticmethod
    def _quantize(image: Image.Image, colors: int, has_alpha: bool) -> Image.Image:
        if has_alpha:
            # Median cut cannot handle an alpha channel
            return image.convert('RGBA').quantize(colors=colors, method=Image.Quantize.FASTOCTREE)
        return image.convert('RGB').quantize(colors=colors, method=Image.Quantize.MEDIANCUT)

    def _prepare_animation(self, source: Image.Image, bounds: Optional[ResizeBounds],
                           profile: EncoderProfile, output_format: ImageFormat):
        frames: List[Image.Image] = []
        durations: List[int] = []
        for frame in ImageSequence.Iterator(source):
            frame_copy = self._resize(frame.convert('RGBA'), bounds)
            durations.append(frame.info.get('duration', 100))
            frames.append(self._convert_mode(frame_copy, profile, output_format))

        save_extra: Dict[str, Any] = {
            'save_all': True,
            'append_images': frames[1:],
            'duration': durations,
            'loop': source.info.get('loop', 0),
        }
        if output_format == ImageFormat.GIF:
            save_extra['disposal'] = 2
        logger.debug(f"Re-encoding {len(frames)} animation frames")
        return frames, save_extra

    @staticmethod
    def _encode(frames: List[Image.Image], profile: EncoderProfile, output_format: ImageFormat,
                exif: Optional[bytes], icc_profile: Optional[bytes], save_extra: Dict[str, Any]) -> bytes:
        save_kwargs = profile.option_dict()
        save_kwargs.update(save_extra)
        if output_format in METADATA_FORMATS:
            if exif:
                save_kwargs['exif'] = exif
            if icc_profile:
                save_kwargs['icc_profile'] = icc_profile

        output = io.BytesIO()
        try:
            frames[0].save(output, format=profile.codec, **save_kwargs)
        except (OSError, ValueError, KeyError) as e:
            raise EncodeFailure(f"{profile.codec} encoder failed: {e}") from e
        return output.getvalue()

    @staticmethod
    def _write(data: bytes, output_path: Optional[str]) -> Optional[str]:
        if not output_path:
            return None
        try:
            output_dir = os.path.dirname(os.path.abspath(output_path))
            os.makedirs(output_dir, exist_ok=True)
            with open(output_path, 'wb') as file:
                file.write(data)
        except OSError as e:
            raise IOFailure(f"Cannot write output: {e}", context=output_path) from e
        return output_path

