"""Parallel generation of catalog ensembles.

The `EnsembleGenerator` runs one task per worker thread of an
`AutoExecutor`. Each task repeatedly claims a catalog number from a
shared `AtomicCounter`, seeds a catalog with its own `CatalogSeeder`,
grows it with its own random generator and hands the finished catalog
to every accumulator.

Ownership across threads:

- shared and read-only: the initializer's catalog parameters and seed
  tables, the accumulators' configuration;
- thread-local and mutable: the seeder, its rupture scratch object,
  the catalog builder and the random generator.

An exception raised inside a task marks the ensemble as aborted. The
abort is detected after the ensemble completes; tasks are not
interrupted.
"""

import concurrent.futures
import dataclasses
import logging
import os
import threading
import time
import traceback
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np

from etas_forecast import log_utils, stats
from etas_forecast.accumulators import EnsembleAccumulator
from etas_forecast.catalog import CatalogBuilder, CatalogGenerator, GenerationInfo, Rupture
from etas_forecast.parameters import CatalogParams, CatalogRange


class AtomicCounter:
    """An integer counter that can be incremented from many threads."""

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    def get_and_increment(self) -> int:
        """Increment the counter, returning the value before the increment."""
        with self._lock:
            value = self._value
            self._value += 1
            return value

    def set(self, value: int) -> None:
        with self._lock:
            self._value = value

    def get(self) -> int:
        with self._lock:
            return self._value


class AutoExecutor(ThreadPoolExecutor):
    """A thread pool that knows its size, defaulting to one thread per CPU.

    Parameters
    ----------
    num_threads : Optional[int]
        Number of worker threads, by default `os.cpu_count()`.
    """

    def __init__(self, num_threads: Optional[int] = None):
        self.num_threads = num_threads or os.cpu_count() or 1
        super().__init__(max_workers=self.num_threads, thread_name_prefix="etas-worker")


class CatalogSeeder(ABC):
    """Fills the seed generation of catalogs. Each instance is used by one thread."""

    def open(self) -> None:
        """Prepare to seed catalogs."""

    def close(self) -> None:
        """Release resources after the last catalog."""

    @abstractmethod
    def seed_catalog(self, builder: CatalogBuilder) -> None:
        """Begin a catalog in `builder` and fill its seed generation."""


class EnsembleInitializer(ABC):
    """Source of seeded catalogs for an ensemble, and of the simulation window."""

    @abstractmethod
    def make_seeder(self) -> CatalogSeeder:
        """Make a seeder for use by one worker thread."""

    def begin_initialization(self) -> None:
        """Called before an ensemble is generated."""

    def end_initialization(self) -> None:
        """Called after an ensemble is generated."""

    @abstractmethod
    def has_mainshock_mag(self) -> bool:
        pass

    @abstractmethod
    def get_mainshock_mag(self) -> float:
        """Magnitude of the mainshock, or of the largest earthquake used for scaling."""

    @abstractmethod
    def get_initial_range(self) -> CatalogRange:
        """The initial simulation window, derived from the start time."""

    @abstractmethod
    def get_range(self) -> CatalogRange:
        """The current simulation window."""

    @abstractmethod
    def set_range(self, cat_range: CatalogRange) -> None:
        """Replace the simulation window used for subsequent catalogs."""

    @abstractmethod
    def get_b_value(self) -> float:
        """The b-value used to rescale the minimum magnitude while ranging."""

    def get_display_params(self) -> dict[str, float]:
        return {}


class FixedStateInitializer(EnsembleInitializer):
    """Seeds every catalog with the same mainshock and catalog parameters.

    Parameters
    ----------
    cat_params : CatalogParams
        Parameters of each catalog. The time and magnitude window is
        replaced by the range whenever `set_range` is called.
    mag_main : float
        Magnitude of the mainshock.
    t_main : float
        Time of the mainshock, in days.
    n_main : Optional[float]
        If given, the branch ratio used for the mainshock's own
        productivity; otherwise the mainshock uses the catalog
        productivity.
    """

    def __init__(
        self,
        cat_params: CatalogParams,
        mag_main: float,
        t_main: float,
        n_main: Optional[float] = None,
    ):
        self.cat_params = cat_params
        self.mag_main = mag_main
        self.t_main = t_main
        self.a_main = cat_params.a
        if n_main is not None:
            self.a_main = stats.inv_branch_ratio(
                n_main,
                cat_params.p,
                cat_params.c,
                cat_params.b,
                cat_params.alpha,
                cat_params.mref,
                cat_params.msup,
                cat_params.tend - cat_params.tbegin,
            )
        self._initial_range = cat_params.get_range()

    def make_seeder(self) -> CatalogSeeder:
        return FixedStateSeeder(self)

    def has_mainshock_mag(self) -> bool:
        return True

    def get_mainshock_mag(self) -> float:
        return self.mag_main

    def get_initial_range(self) -> CatalogRange:
        return dataclasses.replace(self._initial_range)

    def get_range(self) -> CatalogRange:
        return self.cat_params.get_range()

    def set_range(self, cat_range: CatalogRange) -> None:
        self.cat_params = self.cat_params.with_range(cat_range)

    def get_b_value(self) -> float:
        return self.cat_params.b

    def get_display_params(self) -> dict[str, float]:
        return {"Mref": self.cat_params.mref, "Msup": self.cat_params.msup}


class FixedStateSeeder(CatalogSeeder):
    """Thread-local seeder for `FixedStateInitializer`."""

    def __init__(self, initializer: FixedStateInitializer):
        self.initializer = initializer
        self.rup = Rupture()

    def seed_catalog(self, builder: CatalogBuilder) -> None:
        initializer = self.initializer
        cat_params = initializer.cat_params
        builder.begin_catalog(cat_params)
        builder.begin_generation(
            GenerationInfo(initializer.mag_main, initializer.mag_main)
        )
        k_prod = stats.uncorrected_productivity(
            initializer.mag_main, initializer.a_main, cat_params.alpha, cat_params.mref
        )
        self.rup.set_seed(initializer.t_main, initializer.mag_main, k_prod)
        builder.add_rup(self.rup)
        builder.end_generation()


class EnsembleGenerator:
    """Generates an ensemble of catalogs on a thread pool.

    Parameters
    ----------
    seed : Optional[int]
        Entropy for the per-thread random generators. By default fresh
        entropy is drawn for every ensemble.
    """

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self.catalog_count = 0
        """Number of catalogs accumulated by the last ensemble."""
        self.failed_count = 0
        """Number of catalogs that failed to generate (too large or too many generations)."""
        self.thread_abort = False
        """True if any worker task of the last ensemble raised."""
        self.elapsed_time = 0.0

    def _generate_catalogs(
        self,
        initializer: EnsembleInitializer,
        accumulators: list[EnsembleAccumulator],
        num_catalogs: int,
        next_catalog: AtomicCounter,
        completed: AtomicCounter,
        failed: AtomicCounter,
        deadline: Optional[float],
        seed_sequence: np.random.SeedSequence,
    ) -> None:
        rng = np.random.default_rng(seed_sequence)
        generator = CatalogGenerator(rng)
        builder = CatalogBuilder()
        seeder = initializer.make_seeder()
        seeder.open()
        try:
            while next_catalog.get_and_increment() < num_catalogs:
                if deadline is not None and time.monotonic() >= deadline:
                    break
                seeder.seed_catalog(builder)
                catalog = builder.end_catalog()
                if generator.generate(catalog).is_success:
                    for accumulator in accumulators:
                        accumulator.accumulate(catalog)
                    completed.get_and_increment()
                else:
                    failed.get_and_increment()
        finally:
            seeder.close()

    def generate_all_catalogs(
        self,
        initializer: EnsembleInitializer,
        accumulators: list[EnsembleAccumulator],
        num_catalogs: int,
        executor: AutoExecutor,
        max_runtime: Optional[float] = None,
        progress_time: Optional[float] = None,
    ) -> int:
        """Generate catalogs until `num_catalogs` are done or the runtime budget expires.

        Parameters
        ----------
        initializer : EnsembleInitializer
            Supplies seeded catalogs.
        accumulators : list[EnsembleAccumulator]
            Accumulators that receive every successful catalog.
        num_catalogs : int
            Number of catalogs to attempt.
        executor : AutoExecutor
            Thread pool to run on; one task is submitted per thread.
        max_runtime : Optional[float]
            Runtime budget in seconds, or None for unlimited. The budget
            is soft: catalogs not started when it expires are abandoned,
            but catalogs already in progress run to completion and are
            accumulated.
        progress_time : Optional[float]
            Interval between progress log messages in seconds, or None.

        Returns
        -------
        int
            The number of catalogs accumulated. `thread_abort` is set if
            any task raised.
        """
        start = time.monotonic()
        deadline = None if max_runtime is None else start + max_runtime
        next_catalog = AtomicCounter()
        completed = AtomicCounter()
        failed = AtomicCounter()
        self.thread_abort = False

        initializer.begin_initialization()
        for accumulator in accumulators:
            accumulator.begin_accumulation()
        try:
            seed_sequences = np.random.SeedSequence(self.seed).spawn(
                executor.num_threads
            )
            futures = [
                executor.submit(
                    self._generate_catalogs,
                    initializer,
                    accumulators,
                    num_catalogs,
                    next_catalog,
                    completed,
                    failed,
                    deadline,
                    seed_sequence,
                )
                for seed_sequence in seed_sequences
            ]
            pending = set(futures)
            while pending:
                _, pending = concurrent.futures.wait(pending, timeout=progress_time)
                if pending:
                    log_utils.log(
                        "ensemble progress",
                        completed=completed.get(),
                        failed=failed.get(),
                        target=num_catalogs,
                        elapsed=round(time.monotonic() - start, 1),
                    )
            for future in futures:
                error = future.exception()
                if error is not None:
                    self.thread_abort = True
                    log_utils.log(
                        "ensemble worker aborted",
                        None,
                        logging.ERROR,
                        error="".join(traceback.format_exception(error)),
                    )
        finally:
            for accumulator in accumulators:
                accumulator.end_accumulation()
            initializer.end_initialization()

        self.catalog_count = completed.get()
        self.failed_count = failed.get()
        self.elapsed_time = time.monotonic() - start
        log_utils.log(
            "ensemble finished",
            completed=self.catalog_count,
            failed=self.failed_count,
            aborted=self.thread_abort,
            elapsed=round(self.elapsed_time, 3),
        )
        return self.catalog_count
