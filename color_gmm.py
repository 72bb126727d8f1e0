import logging
from enum import Enum

import numpy as np

logger = logging.getLogger(__name__)

COMPONENTS_COUNT = 5
CHANNELS = 3
# weight + mean + row-major covariance, per component
MODEL_SIZE = 1 + CHANNELS + CHANNELS * CHANNELS

SINGULAR_DETERMINANT = 1e-6
SINGULAR_FIX = 0.01
EPSILON = np.finfo(np.float64).eps


class ShapeMismatchError(ValueError):
    pass


class DegenerateCovarianceError(ArithmeticError):
    pass


class LearningStateError(RuntimeError):
    pass


class LearningState(Enum):
    IDLE = 'idle'
    ACCUMULATING = 'accumulating'
    FITTED = 'fitted'


def calc_determinant(c):
    return (c[0, 0] * (c[1, 1] * c[2, 2] - c[1, 2] * c[2, 1])
            - c[0, 1] * (c[1, 0] * c[2, 2] - c[1, 2] * c[2, 0])
            + c[0, 2] * (c[1, 0] * c[2, 1] - c[1, 1] * c[2, 0]))


def calc_inverse_cov_and_determ(cov, singular_fix=0.0):
    """
    Invert a 3x3 covariance matrix through its adjugate.

    When the determinant is at most SINGULAR_DETERMINANT and singular_fix is
    positive, singular_fix is added to the diagonal of `cov` (in place) and the
    determinant is recomputed once.

    Returns:
        (inverse, determinant)

    Raises:
        DegenerateCovarianceError: the (possibly regularized) determinant does
            not exceed machine epsilon.
    """
    c = cov
    dtrm = calc_determinant(c)
    if dtrm <= SINGULAR_DETERMINANT and singular_fix > 0:
        # Adds white noise to avoid a singular covariance matrix.
        c[0, 0] += singular_fix
        c[1, 1] += singular_fix
        c[2, 2] += singular_fix
        dtrm = calc_determinant(c)
        logger.debug("Regularized near-singular covariance, determinant now %g", dtrm)

    if not dtrm > EPSILON:
        raise DegenerateCovarianceError(f"covariance determinant {dtrm!r} is not above machine epsilon")

    inv_dtrm = 1.0 / dtrm
    inverse = np.empty((CHANNELS, CHANNELS))
    inverse[0, 0] = (c[1, 1] * c[2, 2] - c[1, 2] * c[2, 1]) * inv_dtrm
    inverse[1, 0] = -(c[1, 0] * c[2, 2] - c[1, 2] * c[2, 0]) * inv_dtrm
    inverse[2, 0] = (c[1, 0] * c[2, 1] - c[1, 1] * c[2, 0]) * inv_dtrm
    inverse[0, 1] = -(c[0, 1] * c[2, 2] - c[0, 2] * c[2, 1]) * inv_dtrm
    inverse[1, 1] = (c[0, 0] * c[2, 2] - c[0, 2] * c[2, 0]) * inv_dtrm
    inverse[2, 1] = -(c[0, 0] * c[2, 1] - c[0, 1] * c[2, 0]) * inv_dtrm
    inverse[0, 2] = (c[0, 1] * c[1, 2] - c[0, 2] * c[1, 1]) * inv_dtrm
    inverse[1, 2] = -(c[0, 0] * c[1, 2] - c[0, 2] * c[1, 0]) * inv_dtrm
    inverse[2, 2] = (c[0, 0] * c[1, 1] - c[0, 1] * c[1, 0]) * inv_dtrm
    return inverse, dtrm


class SufficientStatistics:
    """Per-component sums, outer product sums and sample counts of one learning pass."""

    def __init__(self, n_components=COMPONENTS_COUNT):
        self.n_components = n_components
        self.sums = np.zeros((n_components, CHANNELS))
        self.prods = np.zeros((n_components, CHANNELS, CHANNELS))
        self.sample_counts = np.zeros(n_components, dtype=np.int64)
        self.total_sample_count = 0

    def reset(self):
        self.sums.fill(0)
        self.prods.fill(0)
        self.sample_counts.fill(0)
        self.total_sample_count = 0

    def _check_component(self, ci):
        if not 0 <= ci < self.n_components:
            raise IndexError(f"component index {ci} out of range [0, {self.n_components})")

    def add_sample(self, ci, color):
        self._check_component(ci)
        color = np.asarray(color, dtype=np.float64)
        self.sums[ci] += color
        self.prods[ci] += np.outer(color, color)
        self.sample_counts[ci] += 1
        self.total_sample_count += 1

    def add_samples(self, labels, colors):
        labels = np.asarray(labels, dtype=np.int64).reshape(-1)
        colors = np.asarray(colors, dtype=np.float64).reshape(-1, CHANNELS)
        if labels.shape[0] != colors.shape[0]:
            raise ValueError(f"got {labels.shape[0]} labels for {colors.shape[0]} colors")
        if labels.size == 0:
            return
        self._check_component(int(labels.min()))
        self._check_component(int(labels.max()))

        np.add.at(self.sums, labels, colors)
        np.add.at(self.prods, labels, np.einsum('ni,nj->nij', colors, colors))
        self.sample_counts += np.bincount(labels, minlength=self.n_components)
        self.total_sample_count += int(labels.size)

    def merge(self, other):
        if other.n_components != self.n_components:
            raise ValueError(f"cannot merge statistics of {other.n_components} components "
                             f"into {self.n_components}")
        self.sums += other.sums
        self.prods += other.prods
        self.sample_counts += other.sample_counts
        self.total_sample_count += other.total_sample_count
        return self


class ColorGMM:
    """
    Gaussian mixture over 3-channel colors with a flat float64 parameter buffer.

    Buffer layout, for K components:
        [0, K)        weights
        [K, 4K)       means, 3 per component
        [4K, 13K)     covariances, 9 per component, row-major
    """

    def __init__(self, model=None, n_components=COMPONENTS_COUNT):
        self.n_components = n_components
        size = MODEL_SIZE * n_components

        if model is None:
            model = np.zeros(size, dtype=np.float64)
        elif (not isinstance(model, np.ndarray) or model.dtype != np.float64
              or model.shape not in ((size,), (1, size)) or not model.flags.c_contiguous):
            shape = getattr(model, 'shape', None)
            dtype = getattr(model, 'dtype', type(model).__name__)
            raise ShapeMismatchError(
                f"model must be a contiguous float64 array of shape ({size},) or (1, {size}), got {shape} {dtype}")

        # A (1, size) buffer is flattened as a view so fitting writes back to it.
        self._model = model
        flat = model.reshape(size)

        k = n_components
        self.weights = flat[0:k]
        self.means = flat[k:k * (1 + CHANNELS)].reshape(k, CHANNELS)
        self.covs = flat[k * (1 + CHANNELS):size].reshape(k, CHANNELS, CHANNELS)

        self.inverse_covs = np.zeros((k, CHANNELS, CHANNELS))
        self.cov_determs = np.zeros(k)

        for ci in range(k):
            if self.weights[ci] > 0:
                self._calc_inverse_cov_and_determ(ci, 0.0)

        self.statistics = SufficientStatistics(k)
        self.state = LearningState.IDLE

    @property
    def params(self):
        return self._model

    def _calc_inverse_cov_and_determ(self, ci, singular_fix):
        self.inverse_covs[ci], self.cov_determs[ci] = calc_inverse_cov_and_determ(self.covs[ci], singular_fix)

    def joint_density(self, color):
        res = 0.0
        for ci in range(self.n_components):
            res += self.weights[ci] * self.component_density(ci, color)
        return res

    def component_density(self, ci, color):
        if self.weights[ci] == 0:
            return 0.0

        assert self.cov_determs[ci] > EPSILON, "density requested for a component without a valid inverse"
        m = self.means[ci]
        d0 = color[0] - m[0]
        d1 = color[1] - m[1]
        d2 = color[2] - m[2]
        inv = self.inverse_covs[ci]
        mult = (d0 * (d0 * inv[0, 0] + d1 * inv[1, 0] + d2 * inv[2, 0])
                + d1 * (d0 * inv[0, 1] + d1 * inv[1, 1] + d2 * inv[2, 1])
                + d2 * (d0 * inv[0, 2] + d1 * inv[1, 2] + d2 * inv[2, 2]))
        return float(1.0 / np.sqrt(self.cov_determs[ci]) * np.exp(-0.5 * mult))

    def classify(self, color):
        """
        Index of the component with the strictly greatest density.

        The running maximum starts at 0, so a color that no component explains
        (all densities 0) falls back to component 0.
        """
        k = 0
        max_density = 0.0
        for ci in range(self.n_components):
            p = self.component_density(ci, color)
            if p > max_density:
                k = ci
                max_density = p
        return k

    def component_densities(self, colors):
        colors = np.asarray(colors, dtype=np.float64).reshape(-1, CHANNELS)
        densities = np.zeros((colors.shape[0], self.n_components))
        for ci in range(self.n_components):
            if self.weights[ci] == 0:
                continue
            assert self.cov_determs[ci] > EPSILON, "density requested for a component without a valid inverse"
            diff = colors - self.means[ci]
            mult = np.einsum('ij,ij->i', np.matmul(diff, self.inverse_covs[ci]), diff)
            densities[:, ci] = np.exp(-0.5 * mult) / np.sqrt(self.cov_determs[ci])
        return densities

    def joint_densities(self, colors):
        return self.component_densities(colors) @ self.weights

    def classify_many(self, colors):
        # argmax keeps the first maximum and returns 0 for an all-zero row
        return np.argmax(self.component_densities(colors), axis=1)

    def _require_state(self, operation, expected=LearningState.ACCUMULATING):
        if self.state is not expected:
            raise LearningStateError(f"{operation}() requires state {expected.value}, model is {self.state.value}")

    def begin_pass(self):
        self.statistics.reset()
        self.state = LearningState.ACCUMULATING

    def add_sample(self, ci, color):
        self._require_state('add_sample')
        self.statistics.add_sample(ci, color)

    def add_samples(self, labels, colors):
        self._require_state('add_samples')
        self.statistics.add_samples(labels, colors)

    def merge_statistics(self, partial):
        self._require_state('merge_statistics')
        self.statistics.merge(partial)

    def end_pass(self):
        """
        Re-estimate every component from the accumulated statistics.

        All components are fitted into scratch arrays first and only copied
        into the parameter buffer and caches once every one of them inverted,
        so a DegenerateCovarianceError leaves the model exactly as it was.
        """
        self._require_state('end_pass')
        stats = self.statistics
        k = self.n_components

        weights = self.weights.copy()
        means = self.means.copy()
        covs = self.covs.copy()
        inverse_covs = self.inverse_covs.copy()
        cov_determs = self.cov_determs.copy()

        for ci in range(k):
            n = int(stats.sample_counts[ci])
            if n == 0:
                weights[ci] = 0
                logger.debug("Component %d received no samples and is disabled", ci)
                continue

            assert stats.total_sample_count > 0
            inv_n = 1.0 / n
            weights[ci] = n / stats.total_sample_count

            m = stats.sums[ci] * inv_n
            means[ci] = m
            covs[ci] = stats.prods[ci] * inv_n - np.outer(m, m)

            inverse_covs[ci], cov_determs[ci] = calc_inverse_cov_and_determ(covs[ci], SINGULAR_FIX)

        self.weights[:] = weights
        self.means[:] = means
        self.covs[:] = covs
        self.inverse_covs[:] = inverse_covs
        self.cov_determs[:] = cov_determs

        self.state = LearningState.FITTED
        logger.debug("Fitted %d samples, weights %s", stats.total_sample_count, self.weights)
