"""Filter-based cartoon effect using Pillow + OpenCV + NumPy.

Pipeline:
- decode, cap the width (resize guard)
- flat colour pass: blur, contrast, brightness, saturate, posterize
- edge pass: greyscale, Laplacian, contrast, invert, blur, threshold
- multiply the edge lines over the flat colours and encode PNG

Usage: python cartoon.py input.jpg [output.png]
"""
import io
import logging
import sys
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

log = logging.getLogger(__name__)


class CartoonError(Exception):
    """Base class for pipeline failures."""


class DecodeError(CartoonError):
    """Input bytes are not a parseable raster image."""


class UnsupportedFormat(CartoonError):
    """Image decoded but its colour model could not be normalized to RGB(A)."""


class DimensionMismatch(CartoonError):
    """Flat and edge rasters differ in size. Indicates a pipeline bug."""


@dataclass(frozen=True)
class FilterParams:
    max_width: int = 1400
    blur_radius: float = 2
    flat_contrast: float = 0.15
    flat_brightness: float = 0.03
    saturation_boost: float = 35
    posterize_levels: int = 7
    edge_contrast: float = 1.0
    edge_blur_radius: float = 1
    threshold_max: int = 210
    composite_source_opacity: float = 0.95
    composite_dest_opacity: float = 1.0


DEFAULT_PARAMS = FilterParams()

LAPLACIAN_KERNEL = np.array(
    [[-1, -1, -1],
     [-1, 8, -1],
     [-1, -1, -1]],
    dtype=np.float32,
)
LAPLACIAN_KERNEL.setflags(write=False)

PNG_COMPRESS_LEVEL = 6


# ---------- Loading ----------

def read_image(source):
    """Decode an image and normalize it to RGB or RGBA.

    Args:
        source: Encoded bytes, a filesystem path or a binary file object.

    Returns:
        A fully loaded PIL image in mode 'RGB' or 'RGBA'.

    Raises:
        DecodeError: if the data is not a readable image.
        UnsupportedFormat: if the colour model cannot be normalized.
        FileNotFoundError: if a path was given and does not exist.
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        source = io.BytesIO(bytes(source))
    try:
        with Image.open(source) as img:
            img.load()
            # rotate camera photos upright before the width guard sees them
            return normalize_mode(ImageOps.exif_transpose(img))
    except FileNotFoundError:
        raise
    except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise DecodeError(f'Could not decode image: {exc}') from exc
    except (OSError, SyntaxError) as exc:
        # truncated or corrupt data
        raise DecodeError(f'Could not decode image: {exc}') from exc


def normalize_mode(img):
    """Return a new RGB/RGBA image for any Pillow mode we know how to handle."""
    mode = img.mode
    try:
        if mode in ('RGB', 'RGBA'):
            return img.copy()
        if mode.startswith('I;16') or mode in ('I', 'F'):
            return _high_depth_to_rgb(img)
        if mode in ('LA', 'La', 'PA', 'RGBa') or 'transparency' in img.info:
            return img.convert('RGBA')
        return img.convert('RGB')
    except (ValueError, OSError) as exc:
        raise UnsupportedFormat(f'Unsupported colour mode {mode!r}: {exc}') from exc


def _high_depth_to_rgb(img):
    """16-bit ints are scaled down by 257. Float images are taken as 0..1
    when nothing exceeds 1.0, otherwise as 0..255."""
    arr = np.asarray(img, dtype=np.float64)
    if img.mode == 'F':
        if arr.size and np.nanmax(arr) <= 1.0:
            arr = arr * 255.0
        arr = np.nan_to_num(arr)
    else:
        arr = arr / 257.0
    grey = _to_uint8(arr)
    return Image.fromarray(grey).convert('RGB')


def guarded_size(width, height, max_width):
    """Size after the resize guard; height rounds half up."""
    if width <= max_width:
        return width, height
    new_height = (2 * height * max_width + width) // (2 * width)
    return max_width, max(1, new_height)


def resize_guard(img, max_width=DEFAULT_PARAMS.max_width):
    """Scale an image down so its width is at most `max_width`.

    Aspect ratio is preserved and Lanczos resampling is used. Images that
    already fit are returned as they are.
    """
    size = guarded_size(img.width, img.height, max_width)
    if size == img.size:
        return img
    log.debug('Resizing %dx%d -> %dx%d', img.width, img.height, *size)
    return img.resize(size, Image.Resampling.LANCZOS)


# ---------- Pixel primitives ----------

def _to_uint8(arr):
    return np.clip(np.rint(arr), 0, 255).astype(np.uint8)


def _split_alpha(img):
    arr = np.asarray(img)
    if img.mode == 'RGBA':
        return arr[:, :, :3].copy(), arr[:, :, 3].copy()
    return arr.copy(), None


def _join_alpha(rgb, alpha):
    if alpha is None:
        return Image.fromarray(rgb)
    return Image.fromarray(np.dstack([rgb, alpha]))


def gaussian_blur(arr, radius):
    """Isotropic Gaussian blur with replicated borders (sigma = radius)."""
    if radius <= 0:
        return arr.copy()
    blurred = cv2.GaussianBlur(
        arr.astype(np.float32), (0, 0), sigmaX=float(radius),
        borderType=cv2.BORDER_REPLICATE,
    )
    return _to_uint8(blurred)


def adjust_contrast(arr, amount):
    """Contrast around mid grey; amount in [-1, 1].

    factor = (1 + amount) / (1 - amount). At amount >= 1 the factor is
    unbounded and the result is a hard step at 127.
    """
    if amount >= 1:
        return np.where(arr > 127, 255, 0).astype(np.uint8)
    factor = (1.0 + amount) / (1.0 - amount)
    out = np.floor(factor * (arr.astype(np.float64) - 127.0) + 127.0)
    return np.clip(out, 0, 255).astype(np.uint8)


def adjust_brightness(arr, amount):
    """Lift towards white (amount > 0) or scale towards black (amount < 0)."""
    values = arr.astype(np.float64)
    if amount < 0:
        out = values * (1.0 + amount)
    else:
        out = values + (255.0 - values) * amount
    return np.clip(np.floor(out), 0, 255).astype(np.uint8)


def saturate(rgb, amount):
    """Add `amount` percent to HSL saturation. Greys stay grey."""
    hls = cv2.cvtColor(rgb.astype(np.float32) / 255.0, cv2.COLOR_RGB2HLS)
    sat = hls[:, :, 2]
    chromatic = sat > 0
    sat[chromatic] = np.clip(sat[chromatic] + amount / 100.0, 0.0, 1.0)
    out = cv2.cvtColor(hls, cv2.COLOR_HLS2RGB) * 255.0
    return _to_uint8(out)


def posterize(arr, levels):
    """Round every channel to the nearest of `levels` evenly spaced values.

    Level k is floor(k * 255 / (levels - 1)), so 7 levels give
    {0, 42, 85, 127, 170, 212, 255}.
    """
    levels = max(2, int(levels))
    steps = levels - 1
    index = np.floor(arr.astype(np.float64) * steps / 255.0 + 0.5)
    return np.floor(index * 255.0 / steps).astype(np.uint8)


def greyscale(rgb):
    values = rgb.astype(np.float64)
    grey = 0.2126 * values[:, :, 0] + 0.7152 * values[:, :, 1] + 0.0722 * values[:, :, 2]
    return np.floor(grey).astype(np.uint8)


def convolve(grey, kernel=LAPLACIAN_KERNEL):
    """Apply a small kernel with clamped borders, clipping the response to 0..255."""
    response = cv2.filter2D(
        grey.astype(np.float32), cv2.CV_32F, kernel,
        borderType=cv2.BORDER_REPLICATE,
    )
    return _to_uint8(response)


def invert(arr):
    return (255 - arr).astype(np.uint8)


def threshold_white(arr, cutoff):
    """Force values above `cutoff` to 255; values at or below are kept."""
    return np.where(arr > cutoff, 255, arr).astype(np.uint8)


# ---------- Pipelines ----------

def flat_color(img, params=DEFAULT_PARAMS):
    """Smooth, saturated, posterized copy of `img` (flat colour regions)."""
    rgb, alpha = _split_alpha(img)
    rgb = gaussian_blur(rgb, params.blur_radius)
    rgb = adjust_contrast(rgb, params.flat_contrast)
    rgb = adjust_brightness(rgb, params.flat_brightness)
    rgb = saturate(rgb, params.saturation_boost)
    rgb = posterize(rgb, params.posterize_levels)
    return _join_alpha(rgb, alpha)


def edge_lines(img, params=DEFAULT_PARAMS):
    """Dark line art on a near-white background, as a mode "L" image."""
    rgb, _ = _split_alpha(img)
    grey = greyscale(rgb)
    edges = convolve(grey, LAPLACIAN_KERNEL)
    edges = adjust_contrast(edges, params.edge_contrast)
    # dark lines on white for the multiply blend
    edges = invert(edges)
    edges = gaussian_blur(edges, params.edge_blur_radius)
    edges = threshold_white(edges, params.threshold_max)
    return Image.fromarray(edges)


def composite_multiply(flat, edges,
                       params=DEFAULT_PARAMS):
    """Multiply-blend `edges` (source) over `flat` (destination).

    Raises:
        DimensionMismatch: if the two rasters are not the same size.
    """
    if flat.size != edges.size:
        raise DimensionMismatch(
            f'flat raster is {flat.size[0]}x{flat.size[1]}, '
            f'edge raster is {edges.size[0]}x{edges.size[1]}'
        )

    rgb, alpha = _split_alpha(flat)
    dst = rgb.astype(np.float64)
    src = np.asarray(edges.convert('L'), dtype=np.float64)[:, :, np.newaxis] / 255.0

    sa = float(params.composite_source_opacity)
    da = float(params.composite_dest_opacity)
    if alpha is not None:
        da = da * (alpha.astype(np.float64)[:, :, np.newaxis] / 255.0)
    out_alpha = da + sa * (1.0 - da)

    blended = dst * da * (1.0 - sa * (1.0 - src)) + 255.0 * src * sa * (1.0 - da)
    with np.errstate(divide='ignore', invalid='ignore'):
        blended = np.where(out_alpha > 0, blended / out_alpha, 0.0)

    out_rgb = _to_uint8(blended)
    if alpha is None:
        return Image.fromarray(out_rgb)
    return _join_alpha(out_rgb, _to_uint8(out_alpha[:, :, 0] * 255.0))


def encode_png(img):
    """Lossless PNG with fixed settings, so equal rasters give equal bytes."""
    buf = io.BytesIO()
    img.save(buf, format='PNG', compress_level=PNG_COMPRESS_LEVEL, optimize=False)
    return buf.getvalue()


def cartoonize_image(img, params=DEFAULT_PARAMS):
    img = resize_guard(normalize_mode(img), params.max_width)
    flat = flat_color(img.copy(), params)
    edges = edge_lines(img.copy(), params)
    return composite_multiply(flat, edges, params)


def cartoonize(source, params=DEFAULT_PARAMS):
    """Decode `source`, apply the cartoon filter chain and return PNG bytes."""
    started = time.perf_counter()
    img = read_image(source)
    out = cartoonize_image(img, params)
    data = encode_png(out)
    log.info(
        'Cartoonized %dx%d -> %dx%d in %.0f ms',
        img.width, img.height, out.width, out.height,
        (time.perf_counter() - started) * 1000,
    )
    return data


def cartoonize_to_file(source, output_dir,
                       params=DEFAULT_PARAMS):
    """Run the pipeline and write `cartoon-<uuid>.png` into `output_dir`.

    Returns:
        Tuple of (file name, absolute path).
    """
    data = cartoonize(source, params)
    return write_output(data, output_dir)


def write_output(data, output_dir,
                 extension='png'):
    out_dir = Path(output_dir).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    out_name = f'cartoon-{uuid.uuid4()}.{extension}'
    out_path = out_dir / out_name
    out_path.write_bytes(data)
    return out_name, out_path


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print('Usage: python cartoon.py INPUT [OUTPUT]', file=sys.stderr)
        return 2
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')

    src = Path(argv[0])
    try:
        data = cartoonize(src)
    except (CartoonError, FileNotFoundError) as exc:
        print(f'Error: {exc}', file=sys.stderr)
        return 1

    out = Path(argv[1]) if len(argv) > 1 else src.with_name(f'{src.stem}-cartoon.png')
    out.write_bytes(data)
    print(f'Saved {out} ({len(data)} bytes)')
    return 0


if __name__ == '__main__':
    sys.exit(main())
