"""Dense monocular depth estimation with epipolar search and per-pixel depth filters.

Each pixel of a reference image carries a Gaussian depth estimate. Every new
image with a known pose refines it: the pixel is matched along its epipolar
line by zero-mean normalised cross-correlation. The match is triangulated, and
the result is fused into the estimate.
"""

from __future__ import annotations

import argparse
import math
import sys
from pathlib import Path

import numpy as np

from slamkit.lie import SE3

BORDER = 20
WIDTH = 640
HEIGHT = 480
FX = 481.2
FY = -480.0
CX = 319.5
CY = 239.5
NCC_WINDOW_SIZE = 3
NCC_AREA = (2 * NCC_WINDOW_SIZE + 1) ** 2
MIN_COV = 0.1
MAX_COV = 10.0
INIT_DEPTH = 3.0
INIT_COV2 = 3.0

SEQUENCE_FILE = "first_200_frames_traj_over_table_input_sequence.txt"
REFERENCE_DEPTH_FILE = "depthmaps/scene_000.depth"

_NCC_THRESHOLD = float(np.float32(0.85))
_SEARCH_STEP = 0.7
_MAX_HALF_LENGTH = 100.0

_OFFSET_Y, _OFFSET_X = np.mgrid[
    -NCC_WINDOW_SIZE : NCC_WINDOW_SIZE + 1, -NCC_WINDOW_SIZE : NCC_WINDOW_SIZE + 1
]
_OFFSETS = np.column_stack([_OFFSET_X.ravel(), _OFFSET_Y.ravel()]).astype(float)


def px2cam(px):
    """Pixel coordinates to a point on the normalised image plane (z = 1)."""
    u, v = np.asarray(px, dtype=float).reshape(2)
    return np.array([(u - CX) / FX, (v - CY) / FY, 1.0])


def cam2px(p_cam):
    """Project a point in camera coordinates to pixel coordinates."""
    x, y, z = np.asarray(p_cam, dtype=float).reshape(3)
    return np.array([x * FX / z + CX, y * FY / z + CY])


def inside(pt):
    """True if the pixel lies inside the image, away from its border."""
    x, y = np.asarray(pt, dtype=float).reshape(2)
    return bool(x >= BORDER and y >= BORDER and x + BORDER < WIDTH and y + BORDER <= HEIGHT)


def bilinear(image, pt):
    """Bilinearly interpolated grey value in [0, 1] at ``pt`` or at each row of an ``(N, 2)`` array."""
    image = np.asarray(image)
    pts = np.asarray(pt, dtype=float)
    x = pts[..., 0]
    y = pts[..., 1]
    xi = x.astype(int)
    yi = y.astype(int)
    xx = x - np.floor(x)
    yy = y - np.floor(y)
    value = (
        (1 - xx) * (1 - yy) * image[yi, xi].astype(float)
        + xx * (1 - yy) * image[yi, xi + 1].astype(float)
        + (1 - xx) * yy * image[yi + 1, xi].astype(float)
        + xx * yy * image[yi + 1, xi + 1].astype(float)
    ) / 255.0
    return float(value) if np.ndim(value) == 0 else value


def ncc(ref, curr, pt_ref, pt_curr):
    """Zero-mean normalised cross-correlation between two square windows."""
    ref = np.asarray(ref)
    pt_ref = np.asarray(pt_ref, dtype=float).reshape(2)
    pt_curr = np.asarray(pt_curr, dtype=float).reshape(2)
    ref_x = (_OFFSETS[:, 0] + pt_ref[0]).astype(int)
    ref_y = (_OFFSETS[:, 1] + pt_ref[1]).astype(int)
    values_ref = ref[ref_y, ref_x].astype(float) / 255.0
    values_curr = bilinear(curr, _OFFSETS + pt_curr)
    d_ref = values_ref - values_ref.sum() / NCC_AREA
    d_curr = values_curr - values_curr.sum() / NCC_AREA
    numerator = float(d_ref @ d_curr)
    denominator = float(d_ref @ d_ref) * float(d_curr @ d_curr)
    return numerator / math.sqrt(denominator + 1e-10)


def _normalized(v):
    n = float(np.linalg.norm(v))
    return v / n if n > 0 else v


def epipolar_search(ref, curr, t_c_r, pt_ref, depth_mu, depth_cov):
    """Search the epipolar line of ``pt_ref`` in ``curr`` for its best match.

    The segment searched spans depths ``depth_mu +- 3 * depth_cov``.
    Returns ``(pt_curr, epipolar_direction)``, or None when no candidate
    reaches an NCC score of 0.85.
    """
    f_ref = _normalized(px2cam(pt_ref))
    px_mean_curr = cam2px(t_c_r.act(f_ref * depth_mu))
    d_min = max(depth_mu - 3 * depth_cov, 0.1)
    d_max = depth_mu + 3 * depth_cov
    px_min_curr = cam2px(t_c_r.act(f_ref * d_min))
    px_max_curr = cam2px(t_c_r.act(f_ref * d_max))

    epipolar_line = px_max_curr - px_min_curr
    direction = _normalized(epipolar_line)
    half_length = min(0.5 * float(np.linalg.norm(epipolar_line)), _MAX_HALF_LENGTH)

    best_ncc = -1.0
    best_px_curr = None
    offset = -half_length
    while offset <= half_length:
        px_curr = px_mean_curr + offset * direction
        offset += _SEARCH_STEP
        if not inside(px_curr):
            continue
        score = ncc(ref, curr, pt_ref, px_curr)
        if score > best_ncc:
            best_ncc = score
            best_px_curr = px_curr
    if best_ncc < _NCC_THRESHOLD or best_px_curr is None:
        return None
    return best_px_curr, direction


def update_depth_filter(pt_ref, pt_curr, t_c_r, epipolar_direction, depth, depth_cov2):
    """Triangulate a match and fuse it into the depth maps in place.

    Returns the fused ``(mean, variance)`` written for the reference pixel.
    """
    pt_ref = np.asarray(pt_ref, dtype=float).reshape(2)
    pt_curr = np.asarray(pt_curr, dtype=float).reshape(2)
    epipolar_direction = np.asarray(epipolar_direction, dtype=float).reshape(2)
    t_r_c = t_c_r.inverse()
    f_ref = _normalized(px2cam(pt_ref))
    f_curr = _normalized(px2cam(pt_curr))

    t = t_r_c.translation
    f2 = t_r_c.rotation @ f_curr
    b = np.array([t @ f_ref, t @ f2])
    a00 = float(f_ref @ f_ref)
    a01 = -float(f_ref @ f2)
    a10 = -a01
    a11 = -float(f2 @ f2)

    with np.errstate(all="ignore"):
        det = np.float64(a00 * a11 - a01 * a10)
        a_inv = np.array([[a11, -a01], [-a10, a00]]) / det
        ans = a_inv @ b
        xm = ans[0] * f_ref
        xn = t + ans[1] * f2
        depth_estimation = float(np.linalg.norm((xm + xn) / 2.0))

        p = f_ref * depth_estimation
        a = p - t
        t_norm = np.float64(np.linalg.norm(t))
        a_norm = np.float64(np.linalg.norm(a))
        alpha = np.arccos(f_ref @ t / t_norm)
        beta_prime_dir = _normalized(px2cam(pt_curr + epipolar_direction))
        beta_prime = np.arccos(beta_prime_dir @ (-t) / t_norm)
        _ = np.arccos(-(a @ t) / (a_norm * t_norm))
        gamma = math.pi - alpha - beta_prime
        p_prime = t_norm * np.sin(beta_prime) / np.sin(gamma)
        d_cov = float(p_prime) - depth_estimation
        d_cov2 = d_cov * d_cov

        row, col = int(pt_ref[1]), int(pt_ref[0])
        mu = float(depth[row, col])
        sigma2 = float(depth_cov2[row, col])
        denom = np.float64(sigma2 + d_cov2)
        mu_fuse = float((d_cov2 * mu + sigma2 * depth_estimation) / denom)
        sigma_fuse2 = float((sigma2 * d_cov2) / denom)

    depth[row, col] = mu_fuse
    depth_cov2[row, col] = sigma_fuse2
    return mu_fuse, sigma_fuse2


def update(ref, curr, t_c_r, depth, depth_cov2):
    """Refine every unconverged pixel of the depth maps in place.

    Pixels whose variance is below 0.1 (converged) or above 10 (diverged) are
    left alone. Returns the number of pixels that were matched and updated.
    """
    rows, cols = depth.shape
    cov = depth_cov2[BORDER : rows - BORDER, BORDER : cols - BORDER]
    active = ~((cov < MIN_COV) | (cov > MAX_COV))
    updated = 0
    for dy, dx in zip(*np.nonzero(active)):
        y = int(dy) + BORDER
        x = int(dx) + BORDER
        pt_ref = np.array([float(x), float(y)])
        match = epipolar_search(
            ref, curr, t_c_r, pt_ref, float(depth[y, x]), math.sqrt(float(depth_cov2[y, x]))
        )
        if match is None:
            continue
        pt_curr, direction = match
        update_depth_filter(pt_ref, pt_curr, t_c_r, direction, depth, depth_cov2)
        updated += 1
    return updated


def evaluate_depth(depth_truth, depth_estimate):
    """Mean error and mean squared error over the image without its border."""
    depth_truth = np.asarray(depth_truth, dtype=float)
    depth_estimate = np.asarray(depth_estimate, dtype=float)
    if depth_truth.shape != depth_estimate.shape:
        raise ValueError("depth maps must have the same shape")
    rows, cols = depth_truth.shape
    region = (slice(BORDER, rows - BORDER), slice(BORDER, cols - BORDER))
    error = depth_truth[region] - depth_estimate[region]
    if error.size == 0:
        raise ValueError("depth maps are too small to evaluate")
    return float(error.mean()), float((error * error).mean())


def read_dataset(path):
    """Read image paths, camera-to-world poses and the reference depth map.

    The sequence file holds lines ``image tx ty tz qx qy qz qw``; the reference
    depth file holds centimetre values, row by row.
    """
    root = Path(path)
    color_image_files = []
    poses = []
    with (root / SEQUENCE_FILE).open(encoding="utf-8") as fin:
        for number, line in enumerate(fin, start=1):
            fields = line.split()
            if not fields:
                continue
            if len(fields) != 8:
                raise ValueError(f"{SEQUENCE_FILE}:{number}: expected 8 fields, got {len(fields)}")
            tx, ty, tz, qx, qy, qz, qw = map(float, fields[1:])
            color_image_files.append(str(root / "images" / fields[0]))
            poses.append(SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)))

    tokens = (root / REFERENCE_DEPTH_FILE).read_text(encoding="utf-8").split()
    values = np.array(tokens[: HEIGHT * WIDTH], dtype=float)
    flat = np.zeros(HEIGHT * WIDTH)
    flat[: values.size] = values / 100.0
    return color_image_files, poses, flat.reshape(HEIGHT, WIDTH)


def _load_gray(path):
    from PIL import Image

    with Image.open(path) as img:
        return np.array(img.convert("L"))


def main(argv=None):
    parser = argparse.ArgumentParser(description="Estimate a dense depth map from a monocular sequence.")
    parser.add_argument("dataset", help="path to the test dataset")
    parser.add_argument("--output", default="depth.png")
    args = parser.parse_args(argv)

    try:
        color_image_files, poses, ref_depth = read_dataset(args.dataset)
    except (OSError, ValueError):
        print("Reading image files failed!", file=sys.stderr)
        return 1
    if not color_image_files:
        print("Reading image files failed!", file=sys.stderr)
        return 1
    print(f"read total {len(color_image_files)} files.")

    try:
        ref = _load_gray(color_image_files[0])
    except OSError:
        print(f"cannot read reference image {color_image_files[0]}", file=sys.stderr)
        return 1
    pose_ref = poses[0]
    depth = np.full((HEIGHT, WIDTH), INIT_DEPTH)
    depth_cov2 = np.full((HEIGHT, WIDTH), INIT_COV2)

    for index in range(1, len(color_image_files)):
        print(f"*** loop {index} ***")
        try:
            curr = _load_gray(color_image_files[index])
        except OSError:
            continue
        t_c_r = poses[index].inverse() @ pose_ref
        update(ref, curr, t_c_r, depth, depth_cov2)
        average_error, average_squared = evaluate_depth(ref_depth, depth)
        print(f"Average squared error = {average_squared}, average error: {average_error}")

    print("estimation returns, saving depth map ...")
    from PIL import Image

    Image.fromarray(np.clip(np.rint(depth), 0, 255).astype(np.uint8)).save(args.output)
    print("done.")
    return 0