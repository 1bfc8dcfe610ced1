"""Matrix-free conjugate gradient solver.

Solves ``A x = B`` for a symmetric positive semi-definite operator `A` given
as a callable, with an iteration cap, an optional early stop on the size of
the update and optional tracking of the quadratic cost.
"""

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Any, List, Optional

from tqdm import tqdm

from .exceptions import ConfigurationError
from .utils import dot

logger = logging.getLogger(__name__)


class SolverStatus(enum.Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    TERMINATED = "terminated"


@dataclass
class SolverState:
    """Mutable state of one conjugate gradient solve."""

    x: Any
    r: Any = None
    p: Any = None
    rr: float = 0.0
    iteration: int = 0
    last_step_sum_of_squares: float = math.inf
    costs: List[float] = field(default_factory=list)
    status: SolverStatus = SolverStatus.INITIALIZED
    stop_reason: Optional[str] = None


@dataclass
class ConjugateGradientResult:
    """Outcome of `ConjugateGradientSolver.solve`.

    `stop_reason` is one of ``"max_iterations"``, ``"early_stop"``,
    ``"converged"`` (exactly zero residual) or ``"breakdown"`` (non-positive
    curvature along the search direction).
    """

    x: Any
    iterations: int
    costs: List[float]
    stop_reason: str
    last_step_sum_of_squares: float


class ConjugateGradientSolver:
    """Conjugate gradient iterations on a matrix-free operator.

    Parameters
    ----------
    operator : callable
        Maps a tensor to ``A(x)`` in a new tensor.
    iterations : int, optional
        Maximum number of iterations (default: 3).
    early_stop_threshold : float, optional
        Stop once ``||x_{k+1} - x_k||^2`` falls below this value. 0 disables
        the early stop (default).
    track_cost : bool, optional
        Record ``cost_constant + 0.5 x^T A x - x^T B`` before every update.
    cost_constant : float, optional
        Constant term of the tracked cost (default: 0.0).
    callback : callable, optional
        Called as ``callback(iteration, x)`` after every update. Raising from
        it aborts the solve.
    progress : bool, optional
        Show a tqdm progress bar (default: False).

    Examples
    --------
    >>> A = lambda x: 2.0 * x
    >>> result = ConjugateGradientSolver(A, iterations=1).solve(torch.ones(3), torch.zeros(3))
    >>> result.x
    tensor([0.5000, 0.5000, 0.5000])
    """

    def __init__(self, operator, iterations=3, early_stop_threshold=0.0, track_cost=False,
                 cost_constant=0.0, callback=None, progress=False):
        if iterations < 0:
            raise ConfigurationError(f"iterations must be non-negative, got {iterations}")
        if early_stop_threshold < 0:
            raise ConfigurationError(f"early_stop_threshold must be non-negative, got {early_stop_threshold}")
        self.operator = operator
        self.iterations = int(iterations)
        self.early_stop_threshold = float(early_stop_threshold)
        self.track_cost = track_cost
        self.cost_constant = float(cost_constant)
        self.callback = callback
        self.progress = progress
        self.state = None

    @property
    def status(self):
        return self.state.status if self.state is not None else SolverStatus.INITIALIZED

    def _cost(self, state, b):
        # cost(x) = C + 0.5 x^T A x - x^T B = C - 0.5 <x, B + r> with r = B - A x
        try:
            return self.cost_constant - 0.5 * dot(state.x, b + state.r)
        except Exception:
            logger.warning("Cost evaluation failed at iteration %d", state.iteration, exc_info=True)
            return math.nan

    def _terminate(self, state, reason):
        state.status = SolverStatus.TERMINATED
        state.stop_reason = reason

    def solve(self, b, x0):
        """Run the iterations from `x0` towards the solution of ``A x = b``.

        `x0` is cloned; neither input is modified.

        Returns
        -------
        ConjugateGradientResult
        """
        state = SolverState(x=x0.clone())
        self.state = state
        state.r = b - self.operator(state.x)
        state.p = state.r.clone()
        state.rr = dot(state.r, state.r)
        state.status = SolverStatus.ITERATING

        iterator = range(self.iterations)
        if self.progress:
            iterator = tqdm(iterator, desc="ConjugateGradient")

        for _ in iterator:
            if state.rr == 0.0:
                logger.info("Residual is zero after %d iterations", state.iteration)
                self._terminate(state, "converged")
                break
            if self.track_cost:
                state.costs.append(self._cost(state, b))

            Ap = self.operator(state.p)
            pAp = dot(state.p, Ap)
            if not pAp > 0.0:
                logger.info("Conjugate gradient breakdown at iteration %d: p^T A p = %g",
                            state.iteration, pAp)
                self._terminate(state, "breakdown")
                break

            alpha = state.rr / pAp
            state.x.add_(state.p, alpha=alpha)
            state.r.sub_(Ap, alpha=alpha)
            del Ap
            state.last_step_sum_of_squares = alpha * alpha * dot(state.p, state.p)
            state.iteration += 1
            logger.debug("Iteration %d: alpha=%g, ||r||^2=%g, step=%g", state.iteration, alpha,
                         state.rr, state.last_step_sum_of_squares)

            if self.callback is not None:
                self.callback(state.iteration, state.x)
            if self.progress:
                iterator.set_postfix({'step': f'{state.last_step_sum_of_squares:.3e}'})

            if 0.0 < self.early_stop_threshold and state.last_step_sum_of_squares < self.early_stop_threshold:
                logger.info("Early stop after %d iterations: step %g below threshold %g",
                            state.iteration, state.last_step_sum_of_squares, self.early_stop_threshold)
                self._terminate(state, "early_stop")
                break

            rr_new = dot(state.r, state.r)
            beta = rr_new / state.rr
            state.p.mul_(beta).add_(state.r)
            state.rr = rr_new
        else:
            self._terminate(state, "max_iterations")

        if self.progress:
            iterator.close()
        return ConjugateGradientResult(
            x=state.x,
            iterations=state.iteration,
            costs=list(state.costs),
            stop_reason=state.stop_reason,
            last_step_sum_of_squares=state.last_step_sum_of_squares,
        )
