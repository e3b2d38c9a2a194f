"""
Sequence solver for multi-order batches.

Small batches are solved exactly by enumerating every permutation; larger
batches use a nearest-neighbor construction refined by 2-opt local search.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, List, Mapping, Optional, Sequence, Tuple
import logging
import time

import numpy as np

from batch_routing.core.criteria import OptimizationCriteria
from batch_routing.core.route_types import Order, PreparationWindow, TrafficCondition
from batch_routing.core.scoring import SequenceScorer
from batch_routing.settings import (
    EXACT_SOLVER_MAX_ORDERS,
    TWO_OPT_MAX_PASSES,
    TWO_OPT_TIME_BUDGET_SECONDS,
)

logger = logging.getLogger(__name__)

ALGORITHM_EMPTY = 'empty'
ALGORITHM_EXACT = 'exact'
ALGORITHM_HEURISTIC = 'nearest_neighbor_2opt'


@dataclass
class SolverResult:
    """Winning permutation of order indices and how it was found."""
    sequence: List[int]
    score: float
    algorithm: str
    evaluations: int = 0
    passes: int = 0
    elapsed_ms: float = 0.0
    construction_score: Optional[float] = None
    construction_sequence: List[int] = field(default_factory=list)


def iter_permutations(items: Sequence[int]) -> Iterator[List[int]]:
    """
    Yield every permutation of items exactly once (iterative Heap's algorithm).
    """
    values = list(items)
    n = len(values)
    yield list(values)

    counters = [0] * n
    i = 1
    while i < n:
        if counters[i] < i:
            if i % 2 == 0:
                values[0], values[i] = values[i], values[0]
            else:
                values[counters[i]], values[i] = values[i], values[counters[i]]
            yield list(values)
            counters[i] += 1
            i = 1
        else:
            counters[i] = 0
            i += 1


def two_opt_swap(sequence: Sequence[int], i: int, j: int) -> List[int]:
    """Reverse the segment sequence[i..j] (inclusive)."""
    return list(sequence[:i]) + list(reversed(sequence[i:j + 1])) + list(sequence[j + 1:])


class SequenceSolver:
    """
    Computes the order permutation maximizing the weighted multi-criteria score.
    """

    def __init__(
        self,
        exact_max_orders: int = EXACT_SOLVER_MAX_ORDERS,
        max_two_opt_passes: int = TWO_OPT_MAX_PASSES,
        time_budget_seconds: float = TWO_OPT_TIME_BUDGET_SECONDS
    ):
        self.exact_max_orders = exact_max_orders
        self.max_two_opt_passes = max_two_opt_passes
        self.time_budget_seconds = time_budget_seconds

    def solve(
        self,
        orders: Sequence[Order],
        distance_matrix: np.ndarray,
        criteria: OptimizationCriteria,
        traffic_conditions: Optional[Mapping[str, TrafficCondition]] = None,
        preparation_windows: Optional[Mapping[str, PreparationWindow]] = None,
        reference_time: Optional[datetime] = None
    ) -> SolverResult:
        """
        Solve the sequencing problem for a batch.

        Raises:
            ConfigurationError: If the criteria weights are invalid.
        """
        criteria.validate()
        scorer = SequenceScorer(
            orders=orders,
            distance_matrix=distance_matrix,
            criteria=criteria,
            traffic_conditions=traffic_conditions or {},
            preparation_windows=preparation_windows or {},
            reference_time=reference_time,
        )
        return self.solve_with_scorer(scorer)

    def solve_with_scorer(self, scorer: SequenceScorer) -> SolverResult:
        scorer.criteria.validate()
        started = time.perf_counter()

        if scorer.num_orders == 0:
            logger.info("No orders to sequence; returning empty solution.")
            return SolverResult(sequence=[], score=0.0, algorithm=ALGORITHM_EMPTY)

        if scorer.num_orders <= self.exact_max_orders:
            result = self.solve_exact(scorer)
        else:
            result = self.solve_heuristic(scorer)

        result.elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            f"Sequenced {scorer.num_orders} orders with {result.algorithm} in {result.elapsed_ms:.1f}ms "
            f"({result.evaluations} evaluations, score {result.score:.4f})"
        )
        return result

    def solve_exact(self, scorer: SequenceScorer) -> SolverResult:
        """Enumerate all n! permutations and keep the first maximum."""
        best_sequence: List[int] = scorer.order_indices()
        best_score = float('-inf')
        evaluations = 0

        for sequence in iter_permutations(scorer.order_indices()):
            score = scorer.score(sequence)
            evaluations += 1
            if score > best_score:
                best_score = score
                best_sequence = sequence

        logger.debug(f"Exact solution found with score {best_score:.4f} after {evaluations} permutations")
        return SolverResult(
            sequence=best_sequence,
            score=best_score,
            algorithm=ALGORITHM_EXACT,
            evaluations=evaluations,
        )

    def solve_heuristic(self, scorer: SequenceScorer) -> SolverResult:
        construction = self.nearest_neighbor(scorer)
        construction_score = scorer.score(construction)

        improved, improved_score, passes, evaluations = self.two_opt(scorer, construction, construction_score)

        return SolverResult(
            sequence=improved,
            score=improved_score,
            algorithm=ALGORITHM_HEURISTIC,
            evaluations=evaluations + 1,
            passes=passes,
            construction_score=construction_score,
            construction_sequence=construction,
        )

    def nearest_neighbor(self, scorer: SequenceScorer) -> List[int]:
        """
        Greedy construction from the best starting order, always moving to the
        unvisited order with the highest transition score.
        """
        current = scorer.starting_order()
        sequence = [current]
        unvisited = [idx for idx in scorer.order_indices() if idx != current]

        while unvisited:
            best_next = unvisited[0]
            best_score = float('-inf')
            for candidate in unvisited:
                score = scorer.transition_score(current, candidate)
                if score > best_score:
                    best_score = score
                    best_next = candidate

            sequence.append(best_next)
            unvisited.remove(best_next)
            current = best_next

        return sequence

    def two_opt(
        self,
        scorer: SequenceScorer,
        sequence: Sequence[int],
        initial_score: Optional[float] = None
    ) -> Tuple[List[int], float, int, int]:
        """
        Improve a sequence with 2-opt segment reversals.

        Passes repeat until one makes no strict improvement, bounded by the
        configured pass count and wall-clock budget.

        Returns:
            Tuple of (sequence, score, passes, evaluations).
        """
        best_sequence = list(sequence)
        best_score = scorer.score(best_sequence) if initial_score is None else initial_score
        n = len(best_sequence)
        deadline = time.monotonic() + self.time_budget_seconds
        passes = 0
        evaluations = 0

        improved = True
        while improved:
            if passes >= self.max_two_opt_passes:
                logger.warning(f"2-opt stopped after reaching the pass limit ({self.max_two_opt_passes})")
                break
            if time.monotonic() >= deadline:
                logger.warning(f"2-opt stopped after exhausting its {self.time_budget_seconds}s budget")
                break

            improved = False
            passes += 1
            for i in range(n - 1):
                for j in range(i + 1, n):
                    candidate = two_opt_swap(best_sequence, i, j)
                    score = scorer.score(candidate)
                    evaluations += 1
                    if score > best_score:
                        best_score = score
                        best_sequence = candidate
                        improved = True

        return best_sequence, best_score, passes, evaluations
