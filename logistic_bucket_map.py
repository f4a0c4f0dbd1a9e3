# -*- coding: utf-8 -*-
from __future__ import annotations

import math
import os
import sys
import threading
import time
import traceback
import unittest
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Final,
    Literal,
    NamedTuple,
    Protocol,
    Tuple,
    TypeAlias,
    runtime_checkable,
)

try:
    from PIL import Image
    import numpy as np
    import numpy.typing as npt
    import matplotlib.figure
    import matplotlib.pyplot as plt
    import scipy.stats as stats
except ImportError as import_error:
    print(
        f"Error: Missing dependencies -> {import_error}. "
        "Please run: pip install Pillow numpy matplotlib scipy"
    )
    sys.exit(1)


NDArrayF64: TypeAlias = npt.NDArray[np.float64]
NDArrayU8: TypeAlias = npt.NDArray[np.uint8]
SolverMethod: TypeAlias = Literal["power_iteration", "damped_inverse"]
OutOfRangePolicy: TypeAlias = Literal["clamp", "discard"]

PRECISION_TOLERANCE: Final[float] = 1e-9
COLUMN_SUM_TOLERANCE: Final[float] = 1e-8
MAX_INTENSITY: Final[float] = 255.0
DEFAULT_PARAMETER: Final[float] = 3.9
DEFAULT_OUTPUT_DIR: Final[Path] = Path("./diagram_outputs").resolve()
DEFAULT_MAX_WORKERS: Final[int] = min(8, os.cpu_count() or 1)
DEFAULT_SEED_FUNC: Callable[[], int] = lambda: int(
    time.time() * 1_000_000
) % (2**32)

VALID_METHODS: Final[frozenset[str]] = frozenset(
    {"power_iteration", "damped_inverse"}
)
VALID_POLICIES: Final[frozenset[str]] = frozenset({"clamp", "discard"})


class SimulationError(Exception):
    pass


class VisualizationError(Exception):
    pass


class ConfigError(ValueError):
    pass


class InvalidTransitionMatrixError(SimulationError):
    pass


class InversionFailedError(SimulationError):
    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Could not invert perturbed matrix after {attempts} attempt{'s' if attempts != 1 else ''}."
        )
        self.attempts = attempts


class SweepCancelledError(SimulationError):
    pass


def _format_filename_number(value: float) -> str:
    return f"{value:g}"


def _ensure_output_dir(file_path: Path) -> Path | None:
    try:
        resolved_path = file_path.resolve()
        output_dir = resolved_path.parent
        output_dir.mkdir(parents=True, exist_ok=True)
        return resolved_path
    except OSError as e:
        print(
            f"Warning: Directory access error for {file_path.parent}: {e}",
            file=sys.stderr,
        )
        return None


def _validate_positive_ints(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigError(
                f"Configuration error: '{name}' must be a positive integer, got {value}."
            )


def _validate_non_negative_nums(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, (int, float)) or not value >= 0:
            raise ConfigError(
                f"Configuration error: '{name}' must be a non-negative number, got {value}."
            )


def _validate_finite_nums(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise ConfigError(
                f"Configuration error: '{name}' must be a finite number, got {value}."
            )


def _validate_floats_exclusive_0_1(*named_values: Tuple[str, Any]) -> None:
    for name, value in named_values:
        if not isinstance(value, float) or not (0.0 < value <= 1.0):
            raise ConfigError(
                f"Configuration error: '{name}' must be a float between 0.0 (exclusive) and 1.0 (inclusive), got {value}."
            )


def _validate_interval(name: str, low: float, high: float) -> None:
    if low >= high:
        raise ConfigError(
            f"Configuration error: '{name}' lower bound ({low}) must be less than upper bound ({high})."
        )


@dataclass(frozen=True)
class BucketConfig:
    BUCKETS: int = 1024
    SUBBUCKETS: int = 2048
    MIN_X: float = 0.0
    MAX_X: float = 1.0
    OUT_OF_RANGE_POLICY: OutOfRangePolicy = "clamp"

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("BUCKETS", self.BUCKETS),
            ("SUBBUCKETS", self.SUBBUCKETS),
        )
        _validate_finite_nums(("MIN_X", self.MIN_X), ("MAX_X", self.MAX_X))
        _validate_interval("MIN_X/MAX_X", self.MIN_X, self.MAX_X)
        if self.OUT_OF_RANGE_POLICY not in VALID_POLICIES:
            raise ConfigError(
                f"Invalid out-of-range policy '{self.OUT_OF_RANGE_POLICY}'. Must be one of {sorted(VALID_POLICIES)}."
            )


@dataclass(frozen=True)
class SolverConfig:
    MAX_ITERATIONS: int = 100
    CONVERGENCE_TOLERANCE: float = 0.001
    DAMPING: float = 0.8
    PERTURBATION_SCALE: float = 0.0005
    MAX_INVERSION_ATTEMPTS: int = 100
    SEED: int | None = field(default_factory=DEFAULT_SEED_FUNC)

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("MAX_ITERATIONS", self.MAX_ITERATIONS),
            ("MAX_INVERSION_ATTEMPTS", self.MAX_INVERSION_ATTEMPTS),
        )
        _validate_non_negative_nums(
            ("CONVERGENCE_TOLERANCE", self.CONVERGENCE_TOLERANCE),
            ("PERTURBATION_SCALE", self.PERTURBATION_SCALE),
        )
        _validate_floats_exclusive_0_1(("DAMPING", self.DAMPING))


@dataclass(frozen=True)
class DiagramConfig:
    MIN_Y: float = 3.0
    MAX_Y: float = 4.0
    SWEEP_STEPS: int = 1024
    METHOD: SolverMethod = "power_iteration"
    MAX_WORKERS: int = DEFAULT_MAX_WORKERS
    SHOW_PROGRESS: bool = True

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("SWEEP_STEPS", self.SWEEP_STEPS),
            ("MAX_WORKERS", self.MAX_WORKERS),
        )
        _validate_finite_nums(("MIN_Y", self.MIN_Y), ("MAX_Y", self.MAX_Y))
        _validate_interval("MIN_Y/MAX_Y", self.MIN_Y, self.MAX_Y)
        if self.METHOD not in VALID_METHODS:
            raise ConfigError(
                f"Invalid solver method '{self.METHOD}'. Must be one of {sorted(VALID_METHODS)}."
            )


@dataclass(frozen=True)
class VisConfig:
    FIGSIZE: tuple[int, int] = (12, 5)
    DPI: int = 150
    GRID_ALPHA: float = 0.3
    LINEWIDTH: float = 0.9

    def __post_init__(self) -> None:
        _validate_positive_ints(
            ("FIGSIZE width", self.FIGSIZE[0]),
            ("FIGSIZE height", self.FIGSIZE[1]),
            ("DPI", self.DPI),
        )
        _validate_floats_exclusive_0_1(("GRID_ALPHA", self.GRID_ALPHA))


def diagram_filename(
    bucket_config: BucketConfig,
    solver_config: SolverConfig,
    diagram_config: DiagramConfig,
    suffix: str = "png",
) -> str:
    parts = [
        str(bucket_config.BUCKETS),
        str(bucket_config.SUBBUCKETS),
        str(solver_config.MAX_ITERATIONS),
        _format_filename_number(bucket_config.MIN_X),
        _format_filename_number(bucket_config.MAX_X),
        _format_filename_number(diagram_config.MIN_Y),
        _format_filename_number(diagram_config.MAX_Y),
        diagram_config.METHOD,
    ]
    return f"logistic_map_{'_'.join(parts)}.{suffix}"


class TransitionMatrix:
    _IVME = InvalidTransitionMatrixError

    def __init__(self, data: Any, out_of_range_samples: int = 0) -> None:
        try:
            matrix = np.array(data, dtype=np.float64)
        except (ValueError, TypeError) as e:
            raise self._IVME(
                f"Invalid data type for transition matrix: {e}"
            ) from e

        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise self._IVME(
                f"Transition matrix must be square, but got shape {matrix.shape}."
            )

        if matrix.shape[0] > 0:
            if not np.all(np.isfinite(matrix)):
                raise self._IVME(
                    "Transition matrix contains non-finite entries."
                )
            if np.any(matrix < -PRECISION_TOLERANCE):
                raise self._IVME(
                    "Transition matrix contains negative probabilities."
                )
            matrix = np.maximum(matrix, 0.0)

            column_sums = matrix.sum(axis=0)
            if np.any(column_sums > 1.0 + COLUMN_SUM_TOLERANCE):
                bad_indices = np.where(
                    column_sums > 1.0 + COLUMN_SUM_TOLERANCE
                )[0]
                raise self._IVME(
                    f"Columns of the transition matrix must sum to at most 1 (tolerance {COLUMN_SUM_TOLERANCE}). "
                    f"Invalid columns found at indices: {bad_indices}. Their sums: {column_sums[bad_indices]}"
                )

        self._matrix: Final[NDArrayF64] = matrix
        self.out_of_range_samples: Final[int] = out_of_range_samples

    @property
    def matrix(self) -> NDArrayF64:
        return self._matrix

    @property
    def num_states(self) -> int:
        return self._matrix.shape[0]

    def column_sums(self) -> NDArrayF64:
        return self._matrix.sum(axis=0)

    def __len__(self) -> int:
        return self.num_states

    def __getitem__(self, source_bucket: int) -> NDArrayF64:
        if not isinstance(source_bucket, int):
            raise TypeError("Bucket index must be an integer.")
        if not 0 <= source_bucket < self.num_states:
            raise IndexError(
                f"Bucket index {source_bucket} out of range for {self.num_states} buckets."
            )
        return self._matrix[:, source_bucket]

    def __repr__(self) -> str:
        return (
            f"TransitionMatrix(num_states={self.num_states}, "
            f"out_of_range_samples={self.out_of_range_samples})"
        )


class TransitionMatrixBuilder:
    def __init__(self, config: BucketConfig) -> None:
        self.config = config
        cfg = config
        bucket_index = np.arange(cfg.BUCKETS, dtype=np.float64)
        span = cfg.MAX_X - cfg.MIN_X
        lower = cfg.MIN_X + span * (bucket_index / cfg.BUCKETS)
        upper = cfg.MIN_X + span * ((bucket_index + 1.0) / cfg.BUCKETS)
        offsets = np.arange(cfg.SUBBUCKETS, dtype=np.float64) / cfg.SUBBUCKETS
        # rows are source buckets, columns are sample positions
        self._samples: Final[NDArrayF64] = (
            lower[:, np.newaxis] + (upper - lower)[:, np.newaxis] * offsets
        )
        self._sources: Final = np.repeat(
            np.arange(cfg.BUCKETS, dtype=np.intp), cfg.SUBBUCKETS
        )

    def bucket_edges(self) -> NDArrayF64:
        cfg = self.config
        edges = cfg.MIN_X + (cfg.MAX_X - cfg.MIN_X) * (
            np.arange(cfg.BUCKETS + 1, dtype=np.float64) / cfg.BUCKETS
        )
        edges[-1] = cfg.MAX_X
        return edges

    def destination_buckets(self, parameter: float) -> NDArrayF64:
        cfg = self.config
        values = self._samples
        mapped = parameter * values * (1.0 - values)
        return np.floor(
            (mapped - cfg.MIN_X) / (cfg.MAX_X - cfg.MIN_X) * cfg.BUCKETS
        ).ravel()

    def build(self, parameter: float) -> TransitionMatrix:
        cfg = self.config
        num_buckets = cfg.BUCKETS

        destinations = self.destination_buckets(float(parameter))
        in_range = (
            np.isfinite(destinations)
            & (destinations >= 0)
            & (destinations < num_buckets)
        )
        out_of_range = int(destinations.size - np.count_nonzero(in_range))

        sources = self._sources
        if cfg.OUT_OF_RANGE_POLICY == "clamp":
            safe = np.nan_to_num(
                destinations, nan=0.0, posinf=num_buckets - 1, neginf=0.0
            )
            target = np.clip(safe, 0, num_buckets - 1).astype(np.intp)
        else:
            target = destinations[in_range].astype(np.intp)
            sources = sources[in_range]

        counts = np.bincount(
            target * num_buckets + sources,
            minlength=num_buckets * num_buckets,
        ).reshape(num_buckets, num_buckets)
        return TransitionMatrix(
            counts / float(cfg.SUBBUCKETS),
            out_of_range_samples=out_of_range,
        )


class ConvergenceReport(NamedTuple):
    distribution: NDArrayF64
    iterations: int
    converged: bool
    final_delta: float


def _as_square_array(matrix: TransitionMatrix | NDArrayF64) -> NDArrayF64:
    data = matrix.matrix if isinstance(matrix, TransitionMatrix) else matrix
    return np.asarray(data, dtype=np.float64)


@runtime_checkable
class SteadyStateComputable(Protocol):
    def compute(
        self,
        matrix: TransitionMatrix | NDArrayF64,
        rng: np.random.Generator | None = None,
    ) -> NDArrayF64:
        ...


class SteadyStateComputer(ABC):
    @staticmethod
    def _validate_square_matrix(matrix: NDArrayF64) -> int:
        if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
            raise InvalidTransitionMatrixError(
                f"Matrix must be square, but got shape {matrix.shape}."
            )
        return matrix.shape[0]

    @abstractmethod
    def compute(
        self,
        matrix: TransitionMatrix | NDArrayF64,
        rng: np.random.Generator | None = None,
    ) -> NDArrayF64:
        ...


class PowerIterationComputer(SteadyStateComputer):
    def __init__(
        self, max_iterations: int, convergence_tolerance: float
    ) -> None:
        _validate_positive_ints(("PowerIteration max_iterations", max_iterations))
        _validate_non_negative_nums(
            ("PowerIteration convergence_tolerance", convergence_tolerance)
        )
        self._max_iterations: Final = max_iterations
        self._tolerance: Final = convergence_tolerance

    def iterate_with_report(
        self, matrix: TransitionMatrix | NDArrayF64
    ) -> ConvergenceReport:
        operator = _as_square_array(matrix)
        num_states = self._validate_square_matrix(operator)
        if num_states == 0:
            return ConvergenceReport(np.array([], dtype=np.float64), 0, True, 0.0)

        current = np.full(num_states, 1.0 / num_states)
        delta = math.inf
        iterations = 0
        try:
            for iterations in range(1, self._max_iterations + 1):
                previous = current
                current = operator @ previous
                delta = float(np.abs(current - previous).sum())
                if delta < self._tolerance:
                    return ConvergenceReport(current, iterations, True, delta)
        except (ValueError, FloatingPointError) as e:
            raise SimulationError("Power iteration computation failed.") from e

        return ConvergenceReport(current, iterations, False, delta)

    def iterate(self, matrix: TransitionMatrix | NDArrayF64) -> NDArrayF64:
        return self.iterate_with_report(matrix).distribution

    def compute(
        self,
        matrix: TransitionMatrix | NDArrayF64,
        rng: np.random.Generator | None = None,
    ) -> NDArrayF64:
        return self.iterate(matrix)


class DampedInverseComputer(SteadyStateComputer):
    # Solves (damped - I) x = 1 with damped = DAMPING * A + (1 - DAMPING) * I.
    # The exact fixed point equation (A - I) x = 0 only guarantees x = 0, so the
    # ones vector stands in as a relaxation. Heuristic: the result is neither
    # normalized nor guaranteed non-negative.
    def __init__(self, config: SolverConfig) -> None:
        self.config = config

    def damped_minus_identity(self, matrix: NDArrayF64) -> NDArrayF64:
        num_states = self._validate_square_matrix(matrix)
        identity = np.identity(num_states)
        damping = self.config.DAMPING
        damped = matrix * damping + identity * (1.0 - damping)
        return damped - identity

    def solve(
        self,
        matrix: TransitionMatrix | NDArrayF64,
        rng: np.random.Generator | None = None,
    ) -> NDArrayF64:
        operator = _as_square_array(matrix)
        base = self.damped_minus_identity(operator)
        num_states = base.shape[0]
        if num_states == 0:
            return np.array([], dtype=np.float64)

        ones = np.ones(num_states)
        try:
            inverse = np.linalg.inv(base)
        except np.linalg.LinAlgError as e:
            print(
                f"Warning (Damped Inverse): {e}. Falling back to randomized perturbation.",
                file=sys.stderr,
            )
            inverse = self.perturb_and_invert(base, rng)
        return inverse @ ones

    def perturb_and_invert(
        self,
        base: NDArrayF64,
        rng: np.random.Generator | None = None,
    ) -> NDArrayF64:
        inverse, _, _ = self._invert_with_perturbation(base, rng)
        return inverse

    def _invert_with_perturbation(
        self,
        base: NDArrayF64,
        rng: np.random.Generator | None = None,
    ) -> Tuple[NDArrayF64, NDArrayF64, int]:
        self._validate_square_matrix(base)
        generator = rng if rng is not None else np.random.default_rng(
            self.config.SEED
        )
        scale = self.config.PERTURBATION_SCALE
        max_attempts = self.config.MAX_INVERSION_ATTEMPTS

        for attempt in range(1, max_attempts + 1):
            perturbed = base + generator.uniform(-scale, scale, size=base.shape)
            try:
                return np.linalg.inv(perturbed), perturbed, attempt
            except np.linalg.LinAlgError as e:
                print(
                    f"Warning (Damped Inverse): Perturbed matrix still singular "
                    f"(attempt {attempt} of {max_attempts}): {e}",
                    file=sys.stderr,
                )

        raise InversionFailedError(max_attempts)

    def compute(
        self,
        matrix: TransitionMatrix | NDArrayF64,
        rng: np.random.Generator | None = None,
    ) -> NDArrayF64:
        return self.solve(matrix, rng)


def iterate(
    matrix: TransitionMatrix | NDArrayF64,
    max_iterations: int,
    convergence_tolerance: float,
) -> NDArrayF64:
    return PowerIterationComputer(max_iterations, convergence_tolerance).iterate(
        matrix
    )


def solve(
    matrix: TransitionMatrix | NDArrayF64,
    config: SolverConfig | None = None,
    rng: np.random.Generator | None = None,
) -> NDArrayF64:
    return DampedInverseComputer(config or SolverConfig()).solve(matrix, rng)


def distribution_to_intensities(
    distribution: NDArrayF64, normalize: bool = False
) -> NDArrayU8:
    values = np.asarray(distribution, dtype=np.float64)
    if not np.all(np.isfinite(values)):
        raise SimulationError("Distribution contains non-finite values.")

    if normalize:
        values = np.abs(values)
        peak = values.max() if values.size else 0.0
        if peak > 0.0:
            values = values / peak
    else:
        values = np.maximum(values, 0.0)

    intensities = MAX_INTENSITY - MAX_INTENSITY * np.sqrt(np.sqrt(values))
    return np.clip(intensities, 0.0, MAX_INTENSITY).astype(np.uint8)


def distribution_entropy(distribution: NDArrayF64) -> float:
    mass = np.abs(np.asarray(distribution, dtype=np.float64))
    total = mass.sum()
    if mass.size == 0 or not total > PRECISION_TOLERANCE:
        return 0.0
    return float(stats.entropy(mass / total))


@dataclass
class ColumnResult:
    index: int
    parameter: float
    intensities: NDArrayU8
    entropy: float
    converged: bool
    out_of_range_samples: int


@dataclass
class DiagramResult:
    pixels: NDArrayU8
    parameters: NDArrayF64
    entropies: NDArrayF64
    method: SolverMethod
    unconverged_columns: list[int] = field(default_factory=list)
    out_of_range_samples: int = 0


class DiagramRenderer:
    def __init__(
        self,
        bucket_config: BucketConfig,
        solver_config: SolverConfig,
        diagram_config: DiagramConfig,
    ) -> None:
        self.bucket_config = bucket_config
        self.solver_config = solver_config
        self.diagram_config = diagram_config
        self.builder = TransitionMatrixBuilder(bucket_config)
        self.power_iteration: PowerIterationComputer = PowerIterationComputer(
            solver_config.MAX_ITERATIONS,
            solver_config.CONVERGENCE_TOLERANCE,
        )
        self.damped_inverse: SteadyStateComputable = DampedInverseComputer(
            solver_config
        )

    @staticmethod
    def sweep_parameters(
        sweep_range: tuple[float, float], sweep_steps: int
    ) -> NDArrayF64:
        low, high = sweep_range
        steps = np.arange(sweep_steps, dtype=np.float64)
        return low + (high - low) * (steps / sweep_steps)

    def render_column(
        self,
        index: int,
        parameter: float,
        method: SolverMethod,
        rng: np.random.Generator | None = None,
    ) -> ColumnResult:
        transition = self.builder.build(parameter)
        converged = True

        if method == "power_iteration":
            report = self.power_iteration.iterate_with_report(transition)
            distribution = report.distribution
            converged = report.converged
            intensities = distribution_to_intensities(distribution)
        else:
            distribution = self.damped_inverse.compute(transition, rng)
            intensities = distribution_to_intensities(
                distribution, normalize=True
            )

        return ColumnResult(
            index=index,
            parameter=float(parameter),
            intensities=intensities,
            entropy=distribution_entropy(distribution),
            converged=converged,
            out_of_range_samples=transition.out_of_range_samples,
        )

    def render(
        self,
        sweep_range: tuple[float, float] | None = None,
        sweep_steps: int | None = None,
        method: SolverMethod | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DiagramResult:
        cfg = self.diagram_config
        sweep_range = sweep_range or (cfg.MIN_Y, cfg.MAX_Y)
        sweep_steps = cfg.SWEEP_STEPS if sweep_steps is None else sweep_steps
        method = method or cfg.METHOD

        _validate_positive_ints(("sweep_steps", sweep_steps))
        _validate_interval("sweep_range", *sweep_range)
        if method not in VALID_METHODS:
            raise ConfigError(
                f"Invalid solver method '{method}'. Must be one of {sorted(VALID_METHODS)}."
            )

        if cancel_event is not None and cancel_event.is_set():
            raise SweepCancelledError("Sweep cancelled before any column was rendered.")

        num_buckets = self.bucket_config.BUCKETS
        parameters = self.sweep_parameters(sweep_range, sweep_steps)
        pixels = np.zeros((num_buckets, sweep_steps), dtype=np.uint8)
        entropies = np.zeros(sweep_steps, dtype=np.float64)
        unconverged: list[int] = []
        out_of_range_total = 0
        failures: dict[int, SimulationError] = {}

        seed_sequence = np.random.SeedSequence(self.solver_config.SEED)
        column_rngs = [
            np.random.default_rng(child)
            for child in seed_sequence.spawn(sweep_steps)
        ]
        max_workers = min(cfg.MAX_WORKERS, sweep_steps)
        completed = 0

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_column: dict[Future[ColumnResult], int] = {
                executor.submit(
                    self.render_column,
                    column,
                    parameters[column],
                    method,
                    column_rngs[column],
                ): column
                for column in range(sweep_steps)
            }

            for future in as_completed(future_to_column):
                column = future_to_column[future]
                if cancel_event is not None and cancel_event.is_set():
                    for pending in future_to_column:
                        pending.cancel()
                    raise SweepCancelledError(
                        f"Sweep cancelled after {completed} of {sweep_steps} columns."
                    )
                try:
                    result = future.result()
                except SimulationError as e:
                    print(
                        f"Warning: Column {column} (r={parameters[column]:.6f}) failed: {e}",
                        file=sys.stderr,
                    )
                    failures[column] = e
                    continue

                pixels[:, column] = result.intensities
                entropies[column] = result.entropy
                out_of_range_total += result.out_of_range_samples
                if not result.converged:
                    unconverged.append(column)

                completed += 1
                if cfg.SHOW_PROGRESS:
                    print(
                        f"Working on column {completed} of {sweep_steps}...",
                        end="\r",
                    )

        if cfg.SHOW_PROGRESS:
            print()

        if failures:
            failed_columns = sorted(failures)
            first_failure = failures[failed_columns[0]]
            raise SimulationError(
                f"{len(failed_columns)} of {sweep_steps} columns failed: {failed_columns}"
            ) from first_failure

        if (
            out_of_range_total
            and self.bucket_config.OUT_OF_RANGE_POLICY == "discard"
        ):
            print(
                f"Warning: {out_of_range_total} samples mapped outside "
                f"[{self.bucket_config.MIN_X}, {self.bucket_config.MAX_X}) and were discarded.",
                file=sys.stderr,
            )

        return DiagramResult(
            pixels=pixels,
            parameters=parameters,
            entropies=entropies,
            method=method,
            unconverged_columns=sorted(unconverged),
            out_of_range_samples=out_of_range_total,
        )


class DiagramImageSink:
    def save(self, pixels: NDArrayU8, filename: str | Path) -> str:
        output_path = Path(filename)
        resolved_path = _ensure_output_dir(output_path)
        if resolved_path is None:
            raise IOError(
                f"Invalid output path or directory creation failed for '{output_path}'. Image not saved."
            )

        try:
            grid = np.ascontiguousarray(pixels, dtype=np.uint8)
            if grid.ndim != 2:
                raise ValueError("pixel grid must be two-dimensional")
            image = Image.fromarray(grid)
        except (TypeError, ValueError) as e:
            raise VisualizationError(
                f"Failed to build grayscale image from pixel grid of shape {np.shape(pixels)}: {e}"
            ) from e

        try:
            image.save(resolved_path)
            return str(resolved_path)
        except (OSError, ValueError) as e:
            raise IOError(
                f"Failed to save diagram image to '{resolved_path}': {e}"
            ) from e


class Visualizer:
    def __init__(self, config: VisConfig) -> None:
        self.config = config

    def _save_or_show(
        self,
        fig: matplotlib.figure.Figure,
        show_plot: bool,
        save_path: Path | None,
    ) -> None:
        try:
            if save_path:
                target_path = _ensure_output_dir(save_path)
                if target_path:
                    try:
                        fig.savefig(
                            target_path,
                            dpi=self.config.DPI,
                            bbox_inches="tight",
                        )
                    except (OSError, ValueError) as e:
                        print(
                            f"Warning: Failed to save plot to {target_path}: {e}",
                            file=sys.stderr,
                        )
                else:
                    print(
                        f"Warning: Plot not saved due to directory issue for path: {save_path}",
                        file=sys.stderr,
                    )

            if show_plot:
                plt.show()
        finally:
            plt.close(fig)

    def plot_entropy_profile(
        self,
        result: DiagramResult,
        show_plot: bool = True,
        save_path: Path | None = None,
    ) -> None:
        if result.parameters.size == 0:
            print("Info: No sweep columns available for an entropy profile.")
            return

        fig: matplotlib.figure.Figure | None = None
        try:
            fig, ax = plt.subplots(figsize=self.config.FIGSIZE)
            ax.plot(
                result.parameters,
                result.entropies,
                color="black",
                linewidth=self.config.LINEWIDTH,
            )
            if result.unconverged_columns:
                ax.scatter(
                    result.parameters[result.unconverged_columns],
                    result.entropies[result.unconverged_columns],
                    s=4,
                    color="red",
                    label="Not converged",
                )
                ax.legend(fontsize="small")

            method_label = result.method.replace("_", " ").title()
            ax.set_title(f"Column Entropy of Bucket Distribution ({method_label})")
            ax.set_xlabel("r")
            ax.set_ylabel("Entropy (nats)")
            ax.grid(True, alpha=self.config.GRID_ALPHA, linestyle=":")
            ax.margins(x=0.01)

            self._save_or_show(fig, show_plot, save_path)
            fig = None

        except Exception as e:
            if fig:
                plt.close(fig)
            raise VisualizationError(
                f"Failed to plot entropy profile: {e}"
            ) from e


def find_stable_point(
    parameter: float = DEFAULT_PARAMETER,
    bucket_config: BucketConfig | None = None,
    solver_config: SolverConfig | None = None,
) -> NDArrayF64:
    bucket_config = bucket_config or BucketConfig()
    solver_config = solver_config or SolverConfig()
    transition = TransitionMatrixBuilder(bucket_config).build(parameter)
    vector = DampedInverseComputer(solver_config).solve(transition)

    peak_bucket = int(np.argmax(np.abs(vector))) if vector.size else -1
    print(
        f"Stable point summary at r={parameter}: "
        f"entropy={distribution_entropy(vector):.4f}, "
        f"peak bucket={peak_bucket}, "
        f"out-of-range samples={transition.out_of_range_samples}"
    )
    return vector


class DiagramRunner:
    def __init__(
        self,
        bucket_config: BucketConfig | None = None,
        solver_config: SolverConfig | None = None,
        diagram_config: DiagramConfig | None = None,
        vis_config: VisConfig | None = None,
        output_dir: Path = DEFAULT_OUTPUT_DIR,
    ) -> None:
        try:
            self.b_cfg = bucket_config or BucketConfig()
            self.s_cfg = solver_config or SolverConfig()
            self.d_cfg = diagram_config or DiagramConfig()
            self.v_cfg = vis_config or VisConfig()
        except ConfigError as e:
            raise ConfigError(
                f"Configuration initialization failed: {e}"
            ) from e

        self.output_dir = output_dir
        self.renderer = DiagramRenderer(self.b_cfg, self.s_cfg, self.d_cfg)
        self.sink = DiagramImageSink()
        self.visualizer = Visualizer(self.v_cfg)
        self.last_result: DiagramResult | None = None

    @property
    def diagram_path(self) -> Path:
        return self.output_dir / diagram_filename(self.b_cfg, self.s_cfg, self.d_cfg)

    @property
    def entropy_plot_path(self) -> Path:
        stem = Path(diagram_filename(self.b_cfg, self.s_cfg, self.d_cfg)).stem
        return self.output_dir / f"{stem}_entropy.png"

    def _run_task(
        self,
        task_name: str,
        task_func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> bool:
        print(f"\n--- Running {task_name} ---")
        start_time = time.monotonic()
        success = False
        try:
            task_func(*args, **kwargs)
            success = True
        except (
            SimulationError,
            VisualizationError,
            ConfigError,
            IOError,
        ) as e:
            print(
                f"ERROR during {task_name}: {type(e).__name__}: {e}",
                file=sys.stderr,
            )
        except Exception as e:
            print(
                f"UNEXPECTED ERROR during {task_name}: {type(e).__name__}: {e}",
                file=sys.stderr,
            )
            traceback.print_exc(file=sys.stderr)
        finally:
            elapsed_time = time.monotonic() - start_time
            status = "OK" if success else "FAILED"
            print(
                f"--- {task_name} {status} (Duration: {elapsed_time:.2f}s) ---"
            )
        return success

    def run_stable_point_summary(self, parameter: float = DEFAULT_PARAMETER) -> bool:
        return self._run_task(
            "Stable Point Summary",
            find_stable_point,
            parameter,
            self.b_cfg,
            self.s_cfg,
        )

    def run_diagram(self, save_image: bool = True) -> bool:
        def task(save: bool):
            cfg = self.d_cfg
            print(
                f"Rendering {cfg.SWEEP_STEPS:,} columns over r in [{cfg.MIN_Y}, {cfg.MAX_Y}) "
                f"with {self.b_cfg.BUCKETS:,} buckets (method: {cfg.METHOD})..."
            )
            result = self.renderer.render()
            self.last_result = result
            if result.unconverged_columns:
                print(
                    f"Info: {len(result.unconverged_columns)} columns did not converge "
                    f"within {self.s_cfg.MAX_ITERATIONS} iterations."
                )
            if save:
                saved_path = self.sink.save(result.pixels, self.diagram_path)
                print(f"Image saved successfully: {saved_path}")

        return self._run_task("Bifurcation Diagram Rendering", task, save_image)

    def run_entropy_profile(
        self, show_plot: bool = False, save_plot: bool = True
    ) -> bool:
        def task(show: bool, save: bool):
            if self.last_result is None:
                raise SimulationError(
                    "No rendered diagram available. Run the diagram task first."
                )
            plot_path = self.entropy_plot_path if save else None
            self.visualizer.plot_entropy_profile(
                self.last_result, show_plot=show, save_path=plot_path
            )
            if plot_path and plot_path.exists():
                print(f"Entropy profile saved: {plot_path.resolve()}")

        return self._run_task(
            "Entropy Profile Visualization", task, show_plot, save_plot
        )

    def run_all(
        self,
        run_stable_point: bool = True,
        run_diagram: bool = True,
        run_entropy: bool = True,
        show_plots: bool = False,
        save_outputs: bool = True,
    ) -> bool:
        max_width = 78
        title = "Logistic Map Bucket Diagram Run"
        print(
            f"\n{'*' * max_width}\n{title:^{max_width}}\n{'*' * max_width}"
        )
        overall_start_time = time.monotonic()
        task_results: list[bool] = []

        if run_stable_point:
            task_results.append(self.run_stable_point_summary())
        if run_diagram:
            task_results.append(self.run_diagram(save_outputs))
            if run_entropy:
                task_results.append(
                    self.run_entropy_profile(show_plots, save_outputs)
                )

        overall_elapsed_time = time.monotonic() - overall_start_time
        overall_success = all(task_results) if task_results else True

        print("\n--- Diagram Run Summary ---")
        print(f"Total execution time: {overall_elapsed_time:.2f} seconds.")
        status_message = (
            "All selected tasks completed successfully"
            if overall_success
            else "One or more tasks FAILED"
        )
        print(f"Overall status: {status_message}")
        print("*" * max_width + "\n")

        return overall_success


def main_diagram_runner(method: SolverMethod = "power_iteration") -> int:
    plt.ioff()
    exit_code = 0

    try:
        print("Initializing Diagram Runner with default configurations...")
        runner = DiagramRunner(diagram_config=DiagramConfig(METHOD=method))
        print("Initialization complete. Starting diagram run...")
        success = runner.run_all(show_plots=False, save_outputs=True)
        exit_code = 0 if success else 1

    except ConfigError as e:
        print(
            f"\nCRITICAL CONFIGURATION ERROR: {e}\nAborting run.",
            file=sys.stderr,
        )
        exit_code = 2
    except Exception as e:
        print(
            f"\nCRITICAL UNHANDLED ERROR: {type(e).__name__}: {e}",
            file=sys.stderr,
        )
        traceback.print_exc(file=sys.stderr)
        exit_code = 3
    finally:
        plt.close("all")

    print(f"\nDiagram run finished. Exiting with code {exit_code}.")
    return exit_code


def run_tests(verbosity_level: int = 2) -> int:
    print("\n--- Running Unit Tests ---")
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromName("test_logistic_bucket_map")
    runner = unittest.TextTestRunner(
        verbosity=verbosity_level, failfast=False, buffer=True
    )
    result = runner.run(suite)

    print("\n--- Unit Tests Complete ---")
    print(f"Total Tests Run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")
    print(f"Skipped: {len(result.skipped)}")

    return 0 if result.wasSuccessful() else 1


def display_help() -> None:
    try:
        script_name = Path(__file__).name
    except NameError:
        script_name = "logistic_bucket_map.py"

    help_text = f"""
Usage: python {script_name} [options]

Logistic map bifurcation diagram from a bucketed Markov transition operator.

Options:
  --method NAME : Steady-state strategy per column, one of
                  'power_iteration' (default) or 'damped_inverse'.
  --test [-v N] : Run the unit test suite.
                  Optional verbosity level N can be 0 (quiet), 1 (default),
                  or 2 (verbose). Default is 2 if -v is omitted.
  --help, -h    : Display this help message and exit.
  (no options)  : Render the full diagram with default parameters.

Description:
  For every column r in [MIN_Y, MAX_Y) the map x' = r*x*(1-x) is turned into a
  transition matrix over equal-width buckets of [MIN_X, MAX_X). Its long-run
  distribution is approximated and painted with a fourth-root intensity map.
  Output: a grayscale PNG whose name encodes the configuration, plus a
  column entropy profile plot.

Default Output Directory:
  Generated files are saved to: {DEFAULT_OUTPUT_DIR.resolve()}
"""
    print(help_text)


def _parse_verbosity(command_args: list[str]) -> int:
    if "-v" not in command_args:
        return 2
    v_index = command_args.index("-v")
    if v_index + 1 >= len(command_args):
        print(
            "Warning: Missing verbosity level after -v argument. Using default (2).",
            file=sys.stderr,
        )
        return 2
    level_str = command_args[v_index + 1]
    if not level_str.isdigit() or int(level_str) not in (0, 1, 2):
        print(
            "Warning: Invalid verbosity level specified after -v. Must be 0, 1, or 2. Using default (2).",
            file=sys.stderr,
        )
        return 2
    return int(level_str)


if __name__ == "__main__":
    exit_code: int = 0
    command_args = sys.argv[1:]

    if "--test" in command_args:
        exit_code = run_tests(verbosity_level=_parse_verbosity(command_args))

    elif "--help" in command_args or "-h" in command_args:
        display_help()
        exit_code = 0

    elif not command_args:
        exit_code = main_diagram_runner()

    elif (
        len(command_args) == 2
        and command_args[0] == "--method"
        and command_args[1] in VALID_METHODS
    ):
        exit_code = main_diagram_runner(method=command_args[1])

    else:
        print(
            f"Error: Unknown or invalid arguments provided: {' '.join(command_args)}",
            file=sys.stderr,
        )
        display_help()
        exit_code = 4

    sys.exit(exit_code)
