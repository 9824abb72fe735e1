"""Removing radial-tangential lens distortion from grayscale images."""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass

import numpy as np

DEFAULT_INPUT = "./distorted.png"
DEFAULT_OUTPUT = "./undistorted.png"


@dataclass(frozen=True)
class Intrinsics:
    """Pinhole camera intrinsics in pixels."""

    fx: float = 458.654
    fy: float = 457.296
    cx: float = 367.215
    cy: float = 248.375


@dataclass(frozen=True)
class Distortion:
    """Radial (k1, k2) and tangential (p1, p2) distortion coefficients."""

    k1: float = -0.28340811
    k2: float = 0.07395907
    p1: float = 0.00019359
    p2: float = 1.76187114e-05


def distort_pixel(u, v, intrinsics=Intrinsics(), distortion=Distortion()):
    """Map an undistorted pixel to where it appears in the distorted image.

    Works on scalars or arrays; returns ``(u_distorted, v_distorted)``.
    """
    u = np.asarray(u, dtype=float)
    v = np.asarray(v, dtype=float)
    x = (u - intrinsics.cx) / intrinsics.fx
    y = (v - intrinsics.cy) / intrinsics.fy
    r2 = x * x + y * y
    radial = 1 + distortion.k1 * r2 + distortion.k2 * r2 * r2
    x_d = x * radial + 2 * distortion.p1 * x * y + distortion.p2 * (r2 + 2 * x * x)
    y_d = y * radial + distortion.p1 * (r2 + 2 * y * y) + 2 * distortion.p2 * x * y
    u_d = intrinsics.fx * x_d + intrinsics.cx
    v_d = intrinsics.fy * y_d + intrinsics.cy
    if u_d.ndim == 0:
        return float(u_d), float(v_d)
    return u_d, v_d


def undistort_image(image, intrinsics=Intrinsics(), distortion=Distortion()):
    """Undistort a 2-D grayscale image with nearest-neighbour sampling.

    Pixels whose source falls outside the image are set to zero.
    """
    image = np.asarray(image)
    if image.ndim != 2:
        raise ValueError(f"expected a 2-D grayscale image, got shape {image.shape}")
    rows, cols = image.shape
    v, u = np.mgrid[0:rows, 0:cols]
    u_d, v_d = distort_pixel(u, v, intrinsics, distortion)
    valid = (u_d >= 0) & (v_d >= 0) & (u_d < cols) & (v_d < rows)
    result = np.zeros_like(image)
    result[valid] = image[v_d[valid].astype(int), u_d[valid].astype(int)]
    return result


def main(argv=None):
    from PIL import Image

    parser = argparse.ArgumentParser(description="Undistort a grayscale image.")
    parser.add_argument("image", nargs="?", default=DEFAULT_INPUT)
    parser.add_argument("--output", default=DEFAULT_OUTPUT)
    args = parser.parse_args(argv)
    try:
        with Image.open(args.image) as img:
            gray = np.array(img.convert("L"))
    except (FileNotFoundError, OSError):
        print(f"cannot read image {args.image}", file=sys.stderr)
        return 1
    result = undistort_image(gray)
    Image.fromarray(result).save(args.output)
    print(f"undistorted image written to {args.output}")
    return 0