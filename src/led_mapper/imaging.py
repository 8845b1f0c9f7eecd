# pylint: disable=no-member
"""
CPU-hungry image reduction, run inside worker processes.

Every function here takes file paths and writes its output atomically, so
they can be shipped to a ProcessPoolExecutor as-is. RAW decoding is done by
the dcraw command line tool; everything after that is OpenCV.
"""
import logging
import subprocess

import numpy as np
import cv2

from led_mapper.errors import DerivationError
from led_mapper.store import atomic_write

DCRAW = "dcraw"

# Raw spatial moments, as recorded in the lightmap
MOMENT_KEYS = ("m00", "m10", "m01", "m20", "m11", "m02", "m30", "m21", "m12", "m03")


def _dcraw(args, raw_path):
    """Run dcraw on raw_path and return its stdout."""
    cmd = [DCRAW, *args, raw_path]
    try:
        result = subprocess.run(cmd, capture_output=True, check=True)
    except FileNotFoundError as exc:
        raise DerivationError(f"{DCRAW} is not installed") from exc
    except subprocess.CalledProcessError as exc:
        stderr = exc.stderr.decode("utf-8", errors="replace").strip()
        raise DerivationError(f"{' '.join(cmd)} failed: {stderr}") from exc
    if not result.stdout:
        raise DerivationError(f"{' '.join(cmd)} produced no output")
    return result.stdout


def _read_gray(path):
    img = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise DerivationError(f"Can't read image {path}")
    return img


def make_thumbnail(raw_path, output_path, thumbscale):
    """
    Generate a small grayscale PNG from the JPEG preview embedded in a RAW file.

    Args:
        raw_path: Camera RAW file.
        output_path: PNG to write.
        thumbscale: Number of 2x pyramid reductions to apply.
    """
    # The embedded preview is much faster than full RAW processing
    jpeg = _dcraw(["-e", "-c"], raw_path)
    img = cv2.imdecode(np.frombuffer(jpeg, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise DerivationError(f"Can't decode preview image in {raw_path}")

    for _ in range(thumbscale):
        img = cv2.pyrDown(img)

    ok, buf = cv2.imencode(".png", img)
    if not ok:
        raise DerivationError(f"Can't encode thumbnail for {raw_path}")
    atomic_write(output_path, buf.tobytes())


def peak_difference(path_a, path_b):
    """Largest absolute per-pixel difference between two grayscale images."""
    img_a = _read_gray(path_a)
    img_b = _read_gray(path_b)
    if img_a.shape != img_b.shape:
        raise DerivationError(
            f"Image size mismatch: {path_a} is {img_a.shape}, {path_b} is {img_b.shape}")

    diff = cv2.absdiff(img_a, img_b)
    _, max_val, _, _ = cv2.minMaxLoc(diff)
    return int(max_val)


def extract_dark_pgm(raw_path, output_path):
    """Dump the undemosaiced 16-bit sensor data of a dark frame as PGM."""
    pgm = _dcraw(["-D", "-4", "-j", "-t", "0", "-c"], raw_path)
    if not pgm.startswith(b"P5"):
        raise DerivationError(f"Unexpected dark frame output for {raw_path}")
    atomic_write(output_path, pgm)


def subtract_background(raw_path, pgm_path, output_path, denoise, black_level):
    """
    Produce a linear 16-bit TIFF of raw_path with a dark frame subtracted.

    Args:
        raw_path: LED photo.
        pgm_path: Dark frame from extract_dark_pgm().
        output_path: TIFF to write.
        denoise: Wavelet denoising threshold.
        black_level: Darkness level subtracted after the dark frame.
    """
    tiff = _dcraw(["-c", "-4", "-T", "-j", "-t", "0",
                   "-n", str(denoise), "-k", str(black_level), "-K", pgm_path], raw_path)
    atomic_write(output_path, tiff)


def compute_moments(image_path):
    """
    Raw image moments of a (possibly 16-bit, possibly color) image.

    Returns:
        (moments, (width, height))
    """
    img = cv2.imread(image_path, cv2.IMREAD_ANYDEPTH | cv2.IMREAD_ANYCOLOR)
    if img is None:
        raise DerivationError(f"Can't read image {image_path}")
    if img.ndim == 3:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)

    m = cv2.moments(img.astype(np.float32))
    moments = {key: float(m[key]) for key in MOMENT_KEYS}
    height, width = img.shape[:2]
    logging.debug("Moments of %s: m00=%.1f", image_path, moments["m00"])
    return moments, (width, height)
