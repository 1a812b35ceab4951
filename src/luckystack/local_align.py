"""
Tile-based local alignment.

Atmospheric seeing distorts different parts of a frame differently, so a
single translation cannot register the whole disc. After global alignment
each frame is cut into a regular grid of tiles; every reference tile is
located in the frame by normalized cross-correlation inside a small search
window, the sparse tile displacements are interpolated into a dense warp
field, and the frame is resampled through it.

Frames whose tiles mostly fail to correlate are passed through with their
global alignment only.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

import numpy as np
from scipy import ndimage
from scipy.interpolate import RBFInterpolator, RectBivariateSpline
from skimage.feature import match_template

from .align import AlignmentResult, parabolic_offset
from .config import Diagnostic, DiagnosticReason
from .frame import Frame, Rect, luminance
from .progress import CancellationToken, ProgressReporter
from .resample import remap
from .utils import resolve_workers

if TYPE_CHECKING:
    from .cache import AlignedFrameStore

logger = logging.getLogger(__name__)

INTERPOLATION_METHODS = ("bicubic", "thin_plate")


def tile_grid(shape: tuple[int, ...], tile_size: int) -> list[list[Rect]]:
    """
    Regular grid of non-overlapping tiles.

    Only whole tiles are produced; the remainder at the bottom and right
    edges is covered by the interpolated warp field.

    Returns
    -------
    list[list[Rect]]
        Tiles indexed ``[row][col]``. Empty when the image is smaller
        than one tile.
    """
    h, w = shape[:2]
    n_rows, n_cols = h // tile_size, w // tile_size
    return [
        [Rect(c * tile_size, r * tile_size, tile_size, tile_size) for c in range(n_cols)]
        for r in range(n_rows)
    ]


def match_tile(
    template: np.ndarray,
    window: np.ndarray,
    margin: int,
) -> tuple[float, float, float]:
    """
    Locate a template inside a search window.

    Parameters
    ----------
    template : np.ndarray
        2D reference tile.
    window : np.ndarray
        2D search region: the tile position grown by ``margin`` pixels on
        every side, taken from the frame being aligned.
    margin : int
        Search radius in pixels.

    Returns
    -------
    tuple[float, float, float]
        (dy, dx, peak): sub-pixel displacement of the template content in
        the window relative to its nominal position, clipped to
        ``±margin``, and the normalized cross-correlation peak in [-1, 1].
    """
    ncc = match_template(window, template)
    py, px = np.unravel_index(int(np.argmax(ncc)), ncc.shape)
    peak = float(ncc[py, px])

    sub_y = sub_x = 0.0
    if 0 < py < ncc.shape[0] - 1:
        sub_y = parabolic_offset(ncc[py - 1, px], peak, ncc[py + 1, px])
    if 0 < px < ncc.shape[1] - 1:
        sub_x = parabolic_offset(ncc[py, px - 1], peak, ncc[py, px + 1])

    dy = float(np.clip(py + sub_y - margin, -margin, margin))
    dx = float(np.clip(px + sub_x - margin, -margin, margin))
    return dy, dx, peak


def _expand_axis(centers: np.ndarray, values: np.ndarray, axis: int) -> tuple[np.ndarray, np.ndarray]:
    """Duplicate a single-sample axis so a spline can be fitted over it."""
    if centers.size > 1:
        return centers, values
    centers = np.array([centers[0] - 1.0, centers[0] + 1.0])
    values = np.repeat(values, 2, axis=axis)
    return centers, values


@dataclass
class WarpField:
    """
    Sparse tile displacements of one frame.

    ``dy``/``dx`` are sampled at the tile centres; ``aligned(p) =
    frame(p + d(p))`` where ``d`` is the dense interpolation.
    """

    centers_y: np.ndarray  # (n_rows,) row coordinate of each tile centre
    centers_x: np.ndarray  # (n_cols,) column coordinate of each tile centre
    dy: np.ndarray  # (n_rows, n_cols)
    dx: np.ndarray  # (n_rows, n_cols)
    valid: np.ndarray  # (n_rows, n_cols) bool, tile correlated above the floor
    margin: float
    method: str = "bicubic"
    _interpolator: object = field(default=None, init=False, repr=False, compare=False)

    @property
    def grid_shape(self) -> tuple[int, int]:
        return self.dy.shape

    @property
    def n_valid(self) -> int:
        return int(np.count_nonzero(self.valid))

    def filled(self) -> tuple[np.ndarray, np.ndarray]:
        """Displacements with every invalid tile replaced by its nearest valid neighbour."""
        if self.valid.all():
            return self.dy, self.dx
        if not self.valid.any():
            return np.zeros_like(self.dy), np.zeros_like(self.dx)
        _, (iy, ix) = ndimage.distance_transform_edt(~self.valid, return_indices=True)
        return self.dy[iy, ix], self.dx[iy, ix]

    def samples(self) -> tuple[np.ndarray, np.ndarray]:
        """Valid tile centres as (N, 2) (y, x) points and their (N, 2) (dy, dx) values."""
        rows, cols = np.nonzero(self.valid)
        points = np.column_stack([self.centers_y[rows], self.centers_x[cols]])
        values = np.column_stack([self.dy[rows, cols], self.dx[rows, cols]])
        return points, values

    def _bicubic(self, ys: np.ndarray, xs: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        dy, dx = self.filled()
        cy, cx = self.centers_y, self.centers_x
        cy_e, dy = _expand_axis(cy, dy, axis=0)
        _, dx = _expand_axis(cy, dx, axis=0)
        cx_e, dy = _expand_axis(cx, dy, axis=1)
        _, dx = _expand_axis(cx, dx, axis=1)
        kx = min(3, cy_e.size - 1)
        ky = min(3, cx_e.size - 1)

        # Clamp to the centre hull: edge tiles extend with their boundary values
        uy, inv_y = np.unique(np.clip(ys, cy[0], cy[-1]), return_inverse=True)
        ux, inv_x = np.unique(np.clip(xs, cx[0], cx[-1]), return_inverse=True)
        out = []
        for values in (dy, dx):
            spline = RectBivariateSpline(cy_e, cx_e, values, kx=kx, ky=ky)
            out.append(spline(uy, ux)[np.ix_(inv_y.ravel(), inv_x.ravel())])
        return out[0], out[1]

    def _thin_plate(self, ys: np.ndarray, xs: np.ndarray) -> tuple[np.ndarray, np.ndarray] | None:
        points, values = self.samples()
        if len(points) < 3 or np.unique(points[:, 0]).size < 2 or np.unique(points[:, 1]).size < 2:
            return None
        if self._interpolator is None:
            try:
                self._interpolator = RBFInterpolator(points, values, kernel="thin_plate_spline")
            except np.linalg.LinAlgError as e:
                logger.debug("Thin-plate fit failed (%s), using bicubic", e)
                return None
        yy, xx = np.meshgrid(
            np.clip(ys, self.centers_y[0], self.centers_y[-1]),
            np.clip(xs, self.centers_x[0], self.centers_x[-1]),
            indexing="ij",
        )
        dense = self._interpolator(np.column_stack([yy.ravel(), xx.ravel()]))
        return dense[:, 0].reshape(yy.shape), dense[:, 1].reshape(yy.shape)

    def evaluate(
        self,
        shape: tuple[int, ...],
        rows: slice | None = None,
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Dense displacement over a band of rows.

        Parameters
        ----------
        shape : tuple
            (H, W, ...) shape of the frame.
        rows : slice, optional
            Row band to evaluate; the whole frame when omitted.

        Returns
        -------
        tuple[np.ndarray, np.ndarray]
            (dy, dx) arrays of shape (band_height, W), clipped to ``±margin``.
        """
        h, w = shape[:2]
        if rows is None:
            rows = slice(0, h)
        ys = np.arange(h, dtype=np.float64)[rows]
        xs = np.arange(w, dtype=np.float64)

        dense = None
        if self.method == "thin_plate":
            dense = self._thin_plate(ys, xs)
        if dense is None:
            dense = self._bicubic(ys, xs)

        dy, dx = dense
        return (
            np.clip(dy, -self.margin, self.margin),
            np.clip(dx, -self.margin, self.margin),
        )


class LocalAligner:
    """
    Tile-based non-rigid refinement of globally aligned frames.

    Parameters
    ----------
    tile_size : int, default 32
        Tile side in pixels (16, 32, 48 or 64).
    margin : int, optional
        Search radius around each tile. Default: half the tile size.
    confidence_floor : float, default 0.5
        Minimum NCC peak for a tile to count as matched.
    min_valid_fraction : float, default 0.5
        Fraction of informative tiles that must match; below it the frame is
        passed through unwarped.
    contrast_floor : float, default 0.1
        Reference tiles with a standard deviation below this fraction of the
        whole reference's are featureless and do not count.
    interpolation : {"bicubic", "thin_plate"}
        Sparse-to-dense interpolation.
    resampling : {"lanczos3", "cubic"}
        Kernel used to apply the warp.
    band_rows : int, default 64
        Rows evaluated and resampled at once.
    """

    def __init__(
        self,
        tile_size: int = 32,
        margin: int | None = None,
        confidence_floor: float = 0.5,
        min_valid_fraction: float = 0.5,
        contrast_floor: float = 0.1,
        interpolation: str = "bicubic",
        resampling: str = "lanczos3",
        band_rows: int = 64,
    ):
        if interpolation not in INTERPOLATION_METHODS:
            raise ValueError(f"Unknown interpolation: {interpolation}")
        self.tile_size = tile_size
        self.margin = tile_size // 2 if margin is None else margin
        self.confidence_floor = confidence_floor
        self.min_valid_fraction = min_valid_fraction
        self.contrast_floor = contrast_floor
        self.interpolation = interpolation
        self.resampling = resampling
        self.band_rows = max(1, band_rows)

    @classmethod
    def from_config(cls, config) -> LocalAligner:
        return cls(
            tile_size=config.tile_size,
            confidence_floor=config.local_confidence_floor,
            min_valid_fraction=config.local_min_valid_fraction,
            interpolation=config.local_interpolation,
            resampling=config.resampling,
            band_rows=config.band_rows,
        )

    def measure(
        self,
        reference_lum: np.ndarray,
        target_lum: np.ndarray,
    ) -> tuple[WarpField | None, float]:
        """
        Match every reference tile in the target.

        Returns
        -------
        tuple[WarpField or None, float]
            The sparse field (None when the frame holds no whole tile) and
            the fraction of informative tiles that matched.
        """
        grid = tile_grid(reference_lum.shape, self.tile_size)
        if not grid:
            return None, 0.0

        n_rows, n_cols = len(grid), len(grid[0])
        m = self.margin
        padded = np.pad(np.asarray(target_lum, dtype=np.float32), m, mode="reflect")
        min_std = self.contrast_floor * float(np.std(reference_lum))

        dy = np.zeros((n_rows, n_cols))
        dx = np.zeros((n_rows, n_cols))
        valid = np.zeros((n_rows, n_cols), dtype=bool)
        n_informative = 0

        for r, row in enumerate(grid):
            for c, tile in enumerate(row):
                template = reference_lum[tile.slices]
                if min_std <= 0 or float(np.std(template)) < min_std:
                    continue
                n_informative += 1
                # Padded coordinates: the tile origin moves by +m, the window starts m earlier
                window = padded[tile.y:tile.y + tile.height + 2 * m, tile.x:tile.x + tile.width + 2 * m]
                tdy, tdx, peak = match_tile(template, window, m)
                if peak >= self.confidence_floor:
                    dy[r, c], dx[r, c] = tdy, tdx
                    valid[r, c] = True

        half = self.tile_size / 2.0
        warp = WarpField(
            centers_y=np.arange(n_rows) * self.tile_size + half - 0.5,
            centers_x=np.arange(n_cols) * self.tile_size + half - 0.5,
            dy=dy,
            dx=dx,
            valid=valid,
            margin=float(m),
            method=self.interpolation,
        )
        fraction = warp.n_valid / n_informative if n_informative else 0.0
        return warp, fraction

    def warp(self, image: np.ndarray, warp_field: WarpField) -> np.ndarray:
        """Resample ``image`` through the dense field, one row band at a time."""
        data = np.asarray(image, dtype=np.float32)
        h, w = data.shape[:2]
        out = np.empty(data.shape, dtype=np.float32)
        xs = np.arange(w, dtype=np.float64)[None, :]
        for start in range(0, h, self.band_rows):
            rows = slice(start, min(start + self.band_rows, h))
            dy, dx = warp_field.evaluate(data.shape, rows)
            ys = np.arange(rows.start, rows.stop, dtype=np.float64)[:, None]
            out[rows] = remap(data, ys + dy, xs + dx, method=self.resampling)
        return out

    def align(
        self,
        reference_lum: np.ndarray,
        frame: Frame,
    ) -> tuple[Frame, WarpField | None, float]:
        """
        Refine a globally aligned frame.

        Returns
        -------
        tuple[Frame, WarpField or None, float]
            The warped frame (or the input frame when too few tiles matched),
            the field that was applied (None when skipped) and the matched
            fraction of informative tiles.
        """
        warp_field, fraction = self.measure(reference_lum, frame.luminance())
        if warp_field is None or fraction < self.min_valid_fraction:
            return frame, None, fraction
        return frame.with_data(self.warp(frame.data, warp_field)), warp_field, fraction


def refine_frames(
    store: AlignedFrameStore,
    results: dict[int, AlignmentResult],
    reference: Frame,
    aligner: LocalAligner | None = None,
    workers: int | None = None,
    chunk_size: int = 64,
    token: CancellationToken | None = None,
    reporter: ProgressReporter | None = None,
    diagnostics: list[Diagnostic] | None = None,
) -> dict[int, AlignmentResult]:
    """
    Apply local alignment to every globally aligned frame in the store.

    Buffers are replaced in place in the store; ``results`` entries are
    updated with the warp field and the matched tile fraction. Frames that
    are skipped keep their global alignment.

    Returns
    -------
    dict[int, AlignmentResult]
        The updated ``results``.
    """
    if aligner is None:
        aligner = LocalAligner()
    if diagnostics is None:
        diagnostics = []
    workers = resolve_workers(workers)
    reference_lum = reference.luminance()
    indices: Sequence[int] = [i for i in store.indices() if i != reference.index]
    total = len(indices)
    done = 0
    n_applied = 0

    def refine_one(index: int) -> tuple[np.ndarray | None, WarpField | None, float]:
        if token is not None:
            token.raise_if_cancelled()
        data = np.asarray(store.get(index))
        warp_field, fraction = aligner.measure(reference_lum, luminance(data))
        if warp_field is None or fraction < aligner.min_valid_fraction:
            return None, None, fraction
        return aligner.warp(data, warp_field), warp_field, fraction

    with ThreadPoolExecutor(max_workers=workers) as executor:
        for start in range(0, total, chunk_size):
            if token is not None:
                token.raise_if_cancelled()
            chunk = indices[start:start + chunk_size]
            futures = {executor.submit(refine_one, index): index for index in chunk}

            for future in as_completed(futures):
                index = futures[future]
                result = results[index]
                try:
                    warped, warp_field, fraction = future.result()
                except (ValueError, np.linalg.LinAlgError) as e:
                    logger.warning("Local alignment failed for frame %d: %s", index, e)
                    diagnostics.append(Diagnostic(index, DiagnosticReason.LOCAL_ALIGN_SKIPPED, str(e)))
                else:
                    result.valid_tile_fraction = fraction
                    if warped is None:
                        diagnostics.append(
                            Diagnostic(
                                index,
                                DiagnosticReason.LOCAL_ALIGN_SKIPPED,
                                f"{fraction:.0%} of tiles matched",
                            )
                        )
                    else:
                        store.replace(index, warped)
                        result.warp_field = warp_field
                        result.local_applied = True
                        n_applied += 1
                done += 1
                if reporter is not None:
                    reporter.step("aligning_local", done, total)

    logger.info("Local alignment applied to %d/%d frames", n_applied, total)
    return results
