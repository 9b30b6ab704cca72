"""
Concurrent scorer pool for the IDVERIFY system.

The pool prepares both captures concurrently (preprocessing, face
observation, descriptors, crop) and then runs every embedding matcher and
classical comparator concurrently on a thread pool. Every task gets the
same time budget, counted from the moment a worker starts it. A scorer
that raises or overruns its budget is dropped from this run and recorded
with its reason, without affecting the others. Whether enough
scorers survived to decide is the consensus engine's call.
"""

import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from . import config
from .comparators import SignalComparator, default_comparators
from .constants import EMBEDDING_SCORERS
from .data_models import AlgorithmResult, ComparisonMetrics, EnsembleAlgorithms, Modality
from .detection import (
    FaceAnalyzer,
    FaceRecognitionAnalyzer,
    FaceSample,
    prepare_sample,
    select_best_pair,
)
from .exceptions import (
    FeatureExtractionError,
    ScorerError,
    ScorerTimeout,
    VerificationCancelled,
)
from .matchers import FaceMatcher, default_matchers
from .utils import timer

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Interval at which the pool checks for cancellation while waiting
POLL_INTERVAL_SECONDS = 0.05


@dataclass
class PoolOutcome:
    """
    Everything the scorers produced for one pair of captures.

    Parameters
    ----------
    algorithms : EnsembleAlgorithms
        Embedding matcher verdicts; dropped matchers are ``None``.
    metrics : ComparisonMetrics
        Classical comparator similarities; dropped comparators are ``None``.
    dropped : Dict[str, str]
        Scorer name to the reason it was left out.
    """

    algorithms: EnsembleAlgorithms
    metrics: ComparisonMetrics
    dropped: Dict[str, str] = field(default_factory=dict)

    @property
    def embedding_count(self) -> int:
        return self.algorithms.count


class ScorerPool:
    """
    Runs the embedding matchers and classical comparators concurrently.

    Parameters
    ----------
    matchers : Optional[Sequence[FaceMatcher]], default=None
        Embedding matchers; the four default matchers when omitted.
    comparators : Optional[Sequence[SignalComparator]], default=None
        Classical comparators; the six defaults when omitted.
    face_analyzer : Optional[FaceAnalyzer], default=None
        Backend used to prepare samples. Created on first use when omitted.
    timeout_seconds : float, default=config.SCORER_TIMEOUT_SECONDS
        Time budget of each scorer and of each capture preparation,
        counted from when a worker starts it.
    max_workers : int, default=config.MAX_WORKERS
        Thread pool size.

    Examples
    --------
    >>> pool = ScorerPool()
    >>> outcome = pool.run(selfie_image, document_image)
    >>> print(outcome.algorithms.count, outcome.dropped)
    """

    def __init__(
        self,
        matchers: Optional[Sequence[FaceMatcher]] = None,
        comparators: Optional[Sequence[SignalComparator]] = None,
        face_analyzer: Optional[FaceAnalyzer] = None,
        timeout_seconds: float = config.SCORER_TIMEOUT_SECONDS,
        max_workers: int = config.MAX_WORKERS,
    ) -> None:
        self.matchers: List[FaceMatcher] = (
            list(matchers) if matchers is not None else default_matchers()
        )
        self.comparators: List[SignalComparator] = (
            list(comparators) if comparators is not None else default_comparators()
        )
        self._face_analyzer = face_analyzer
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers

        unknown = [m.name for m in self.matchers if m.name not in EMBEDDING_SCORERS]
        if unknown:
            raise ValueError(f"Unknown embedding matchers: {unknown}")

        unknown = [
            c.name for c in self.comparators if c.name not in ComparisonMetrics.SIMILARITY_FIELDS
        ]
        if unknown:
            raise ValueError(f"Unknown comparators: {unknown}")

        names = self.scorer_names
        duplicated = sorted({name for name in names if names.count(name) > 1})
        if duplicated:
            raise ValueError(f"Duplicate scorer names: {duplicated}")

        logger.info(
            "ScorerPool initialized",
            matchers=[m.name for m in self.matchers],
            comparators=[c.name for c in self.comparators],
            timeout_seconds=timeout_seconds,
            max_workers=max_workers,
        )

    @property
    def face_analyzer(self) -> FaceAnalyzer:
        if self._face_analyzer is None:
            self._face_analyzer = FaceRecognitionAnalyzer()
        return self._face_analyzer

    @property
    def scorer_names(self) -> List[str]:
        return [m.name for m in self.matchers] + [c.name for c in self.comparators]

    def prepare(
        self,
        selfie_image: np.ndarray,
        document_image: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[FaceSample, FaceSample]:
        """
        Preprocess both captures and extract their faces concurrently.

        Each capture gets the scorer time budget of its own, and the closest
        descriptor pair of the two is selected for matching.

        Raises
        ------
        ScorerError
            If either capture has no usable face or its extraction timed out.
        VerificationCancelled
            If ``cancel_event`` is set before extraction settles.
        """
        analyzer = self.face_analyzer
        results, errors = self._execute(
            {
                Modality.SELFIE.value: (
                    prepare_sample,
                    (analyzer, selfie_image, Modality.SELFIE.value),
                ),
                Modality.DOCUMENT.value: (
                    prepare_sample,
                    (analyzer, document_image, Modality.DOCUMENT.value),
                ),
            },
            cancel_event,
        )
        for modality in (Modality.SELFIE.value, Modality.DOCUMENT.value):
            error = errors.get(modality)
            if isinstance(error, ScorerTimeout):
                raise FeatureExtractionError(
                    f"Face extraction did not finish within {self.timeout_seconds:.1f}s",
                    modality=modality,
                )
            if error is not None:
                raise error

        return select_best_pair(results[Modality.SELFIE.value], results[Modality.DOCUMENT.value])

    @timer
    def run(
        self,
        selfie_image: np.ndarray,
        document_image: np.ndarray,
        cancel_event: Optional[threading.Event] = None,
    ) -> PoolOutcome:
        """
        Prepare both captures and run every scorer on them.

        A failed preparation drops every scorer; the caller decides what a
        pool outcome with no scorers means.

        Raises
        ------
        VerificationCancelled
            If ``cancel_event`` is set before all scorers settle.
        """
        try:
            selfie, document = self.prepare(selfie_image, document_image, cancel_event)
        except ScorerError as e:
            logger.warning(
                "Sample preparation failed, no scorer can run",
                error=e.to_dict(),
            )
            reason = f"{type(e).__name__}: {e.message}"
            return PoolOutcome(
                algorithms=EnsembleAlgorithms(),
                metrics=ComparisonMetrics(),
                dropped={name: reason for name in self.scorer_names},
            )

        return self.score_samples(selfie, document, cancel_event)

    def score_samples(
        self,
        selfie: FaceSample,
        document: FaceSample,
        cancel_event: Optional[threading.Event] = None,
    ) -> PoolOutcome:
        """
        Run every scorer concurrently on prepared samples.

        Raises
        ------
        VerificationCancelled
            If ``cancel_event`` is set before all scorers settle.
        """
        tasks: Dict[str, Tuple[Callable, tuple]] = {}
        for matcher in self.matchers:
            tasks[matcher.name] = (matcher.score, (selfie, document))
        for comparator in self.comparators:
            tasks[comparator.name] = (comparator, (selfie, document))

        results, errors = self._execute(tasks, cancel_event)

        algorithm_results: Dict[str, AlgorithmResult] = {}
        similarities: Dict[str, float] = {}
        distances: Dict[str, float] = {}
        dropped: Dict[str, str] = {}

        for name, error in errors.items():
            logger.warning("Scorer dropped", **error.to_dict())
            dropped[name] = error.message

        for name, value in results.items():
            if isinstance(value, AlgorithmResult):
                algorithm_results[name] = value
            else:
                similarity, raw_distance = value
                similarities[name] = similarity
                if raw_distance is not None and name in ("euclidean", "cosine"):
                    distances[f"{name}_distance"] = raw_distance

        outcome = PoolOutcome(
            algorithms=EnsembleAlgorithms.from_results(algorithm_results),
            metrics=ComparisonMetrics(**similarities, **distances),
            dropped=dropped,
        )

        logger.info(
            "Scorer pool completed",
            embedding_scorers=outcome.embedding_count,
            comparators=len(similarities),
            dropped=sorted(dropped),
        )
        return outcome

    def _execute(
        self,
        tasks: Dict[str, Tuple[Callable, tuple]],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[Dict[str, Any], Dict[str, ScorerError]]:
        """
        Run named tasks on a fresh thread pool.

        Returns the results of the tasks that finished and a ``ScorerError``
        for every task that raised or overran its time budget.
        """
        if cancel_event is not None and cancel_event.is_set():
            raise VerificationCancelled()

        started: Dict[str, float] = {}
        executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="idverify-scorer"
        )
        futures: Dict[Future, str] = {}
        try:
            for name, (fn, args) in tasks.items():
                futures[executor.submit(_started_call, started, name, fn, *args)] = name
            done = self._wait(futures, started, cancel_event)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        results: Dict[str, Any] = {}
        errors: Dict[str, ScorerError] = {}
        for future, name in futures.items():
            if future not in done:
                errors[name] = ScorerTimeout(name, self.timeout_seconds)
                continue
            try:
                results[name] = future.result()
            except ScorerError as e:
                errors[name] = e
            except Exception as e:
                errors[name] = ScorerError(f"Scorer '{name}' failed: {str(e)}", scorer=name)
        return results, errors

    def _wait(
        self,
        futures: Dict[Future, str],
        started: Dict[str, float],
        cancel_event: Optional[threading.Event],
    ) -> set:
        """
        Wait for the futures, each bounded by the timeout from its own start.

        Tasks still queued when every wave of workers has used its budget
        are abandoned; that only happens when overrunning tasks keep the
        workers busy.
        """
        waves = math.ceil(len(futures) / float(self.max_workers))
        queue_deadline = time.monotonic() + self.timeout_seconds * max(1, waves)
        pending = set(futures)
        done: set = set()

        while pending:
            if cancel_event is not None and cancel_event.is_set():
                for future in pending:
                    future.cancel()
                logger.info("Scorer pool cancelled", pending=len(pending))
                raise VerificationCancelled()

            now = time.monotonic()
            for future in list(pending):
                if future.done():
                    continue
                start = started.get(futures[future])
                if start is None:
                    expired = now >= queue_deadline
                else:
                    expired = now - start >= self.timeout_seconds
                if expired:
                    future.cancel()
                    pending.discard(future)

            if not pending:
                break

            finished, pending = wait(
                pending, timeout=POLL_INTERVAL_SECONDS, return_when=FIRST_COMPLETED
            )
            done |= finished

        return done


def _started_call(started: Dict[str, float], name: str, fn: Callable, *args) -> Any:
    started[name] = time.monotonic()
    return fn(*args)
