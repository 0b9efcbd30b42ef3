from __future__ import annotations

"""Coordinate particle filter with separated process, observation and resampling components."""

import logging
import math
import random
from abc import ABC, abstractmethod
from collections.abc import Sequence

import numpy as np

from .body_state import POSE6, BodyStateModel
from .config import TrackerConfig
from .errors import ConfigurationError
from .meshes import require_assets
from .model import CameraIntrinsics, RecursiveFilter, Renderer

logger = logging.getLogger("depthtrack.filter")


def _normalize_log_weights(log_weights: np.ndarray) -> np.ndarray:
    if log_weights.size == 0:
        return np.empty((0,), dtype=np.float64)
    finite = np.isfinite(log_weights)
    if not np.any(finite):
        return np.full(log_weights.shape, 1.0 / log_weights.size, dtype=np.float64)
    shifted = np.where(finite, log_weights - np.max(log_weights[finite]), -np.inf)
    weights = np.exp(shifted)
    return weights / float(np.sum(weights))


def kl_divergence_from_uniform(weights: np.ndarray) -> float:
    """KL(w || uniform) = log N - H(w); 0 for uniform weights."""
    weights = np.asarray(weights, dtype=np.float64)
    if weights.size == 0:
        return 0.0
    positive = weights[weights > 0.0]
    entropy = -float(np.sum(positive * np.log(positive)))
    return max(0.0, math.log(weights.size) - entropy)


class Resampler(ABC):
    @abstractmethod
    def indices(self, weights: np.ndarray, count: int, rng: random.Random) -> np.ndarray:
        """Indices of the `count` samples drawn according to normalized `weights`."""


class SystematicResampler(Resampler):
    def indices(self, weights: np.ndarray, count: int, rng: random.Random) -> np.ndarray:
        if count <= 0 or weights.size == 0:
            return np.empty((0,), dtype=np.int64)
        cumulative = np.cumsum(weights, dtype=np.float64)

        step = 1.0 / count
        start = rng.random() * step
        points = start + step * np.arange(count, dtype=np.float64)
        indices = np.searchsorted(cumulative, points, side="left")
        return np.clip(indices, 0, weights.size - 1)


class StratifiedResampler(Resampler):
    def indices(self, weights: np.ndarray, count: int, rng: random.Random) -> np.ndarray:
        if count <= 0 or weights.size == 0:
            return np.empty((0,), dtype=np.int64)
        cumulative = np.cumsum(weights, dtype=np.float64)

        points = (np.arange(count, dtype=np.float64) + np.asarray([rng.random() for _ in range(count)])) / count
        indices = np.searchsorted(cumulative, points, side="left")
        return np.clip(indices, 0, weights.size - 1)


class MultinomialResampler(Resampler):
    def indices(self, weights: np.ndarray, count: int, rng: random.Random) -> np.ndarray:
        if count <= 0 or weights.size == 0:
            return np.empty((0,), dtype=np.int64)
        chosen = rng.choices(population=range(weights.size), weights=weights.tolist(), k=count)
        return np.asarray(chosen, dtype=np.int64)


def build_resampler(name: str) -> Resampler:
    normalized = name.strip().lower()
    if normalized == "systematic":
        return SystematicResampler()
    if normalized == "stratified":
        return StratifiedResampler()
    if normalized == "multinomial":
        return MultinomialResampler()
    raise ValueError("Unknown resampler. Expected one of: systematic, stratified, multinomial")


class BrownianMotionModel:
    """Per-dimension damped Brownian motion (Ornstein-Uhlenbeck increments)."""

    def __init__(self, sigmas: Sequence[float], *, damping: float) -> None:
        self._sigmas = np.asarray(sigmas, dtype=np.float64)
        self._damping = max(0.0, float(damping))

    @staticmethod
    def for_layout(
        layout: BodyStateModel,
        *,
        linear_sigma: float,
        angular_sigma: float,
        joint_sigmas: Sequence[float] = (),
        damping: float,
    ) -> "BrownianMotionModel":
        sigmas = np.zeros(layout.total_dim, dtype=np.float64)
        joint_cursor = 0
        for index, body in enumerate(layout.bodies):
            part = layout.body_slice(index)
            if body.kind == POSE6:
                sigmas[part.start : part.start + 3] = linear_sigma
                sigmas[part.start + 3 : part.stop] = angular_sigma
                continue
            body_sigmas = list(joint_sigmas[joint_cursor : joint_cursor + body.dimension])
            if len(body_sigmas) != body.dimension:
                raise ConfigurationError(
                    f"the dimension of the joint sigmas is {len(joint_sigmas)} "
                    f"while the state dimension is {layout.total_dim}"
                )
            sigmas[part] = body_sigmas
            joint_cursor += body.dimension
        return BrownianMotionModel(sigmas, damping=damping)

    @property
    def sigmas(self) -> np.ndarray:
        return self._sigmas

    def noise_std(self, dt: float) -> np.ndarray:
        dt = max(0.0, float(dt))
        if dt == 0.0:
            return np.zeros_like(self._sigmas)
        if self._damping <= 0.0:
            return self._sigmas * math.sqrt(dt)
        scale = (1.0 - math.exp(-2.0 * self._damping * dt)) / (2.0 * self._damping)
        return self._sigmas * math.sqrt(scale)

    def propagate(
        self,
        samples: np.ndarray,
        block: Sequence[int],
        dt: float,
        control: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """Copy of `samples` with only the `block` dimensions moved."""
        moved = np.array(samples, copy=True)
        block_idx = np.asarray(block, dtype=np.int64)
        std = self.noise_std(dt)[block_idx]
        drift = np.asarray(control, dtype=np.float64)[block_idx] * max(0.0, float(dt))
        noise = rng.standard_normal((samples.shape[0], block_idx.size)) * std[None, :]
        moved[:, block_idx] += drift[None, :] + noise
        return moved


class DepthObservationModel:
    """Robust per-pixel depth likelihood with a latent per-pixel occlusion probability.

    Log-likelihoods are reported relative to "nothing rendered at this pixel",
    so only pixels covered by a rendered body and carrying a valid observed
    depth contribute.

    States are rendered and scored `chunk_size` at a time, so the per-pixel
    temporaries never hold more than one chunk of the population.
    """

    def __init__(
        self,
        renderer: Renderer,
        intrinsics: CameraIntrinsics,
        *,
        tail_weight: float,
        model_sigma: float,
        sigma_factor: float,
        max_depth_m: float,
        p_occluded_visible: float,
        p_occluded_occluded: float,
        initial_occlusion_prob: float,
        occlusion_delta_time_s: float,
        chunk_size: int = 16,
    ) -> None:
        self._renderer = renderer
        self._intrinsics = intrinsics
        self._tail_weight = float(np.clip(tail_weight, 0.0, 1.0))
        self._model_sigma = max(1e-9, float(model_sigma))
        self._sigma_factor = max(0.0, float(sigma_factor))
        self._max_depth = max(1e-6, float(max_depth_m))
        self._p_ov = float(np.clip(p_occluded_visible, 0.0, 1.0))
        self._p_oo = float(np.clip(p_occluded_occluded, 0.0, 1.0))
        self._initial_occlusion = float(np.clip(initial_occlusion_prob, 0.0, 1.0))
        self._occlusion_dt = max(1e-6, float(occlusion_delta_time_s))
        self._chunk_size = max(1, int(chunk_size))
        self._occlusion = np.full(intrinsics.height_px * intrinsics.width_px, self._initial_occlusion)

    @property
    def intrinsics(self) -> CameraIntrinsics:
        return self._intrinsics

    @property
    def occlusion(self) -> np.ndarray:
        return self._occlusion.reshape(self._intrinsics.shape)

    def reset_occlusion(self) -> None:
        self._occlusion = np.full(self._occlusion.shape, self._initial_occlusion)

    def predict_occlusion(self, dt: float) -> None:
        """Advance the two-state occlusion chain by `dt` seconds."""
        if dt <= 0.0:
            return
        steps = dt / self._occlusion_dt
        contraction = self._p_oo - self._p_ov
        denom = 1.0 - contraction
        stationary = self._p_ov / denom if denom > 1e-12 else self._initial_occlusion
        factor = math.copysign(abs(contraction) ** steps, contraction) if contraction != 0.0 else 0.0
        self._occlusion = stationary + (self._occlusion - stationary) * factor

    def _check_observation(self, observation: np.ndarray) -> np.ndarray:
        observed = np.asarray(observation, dtype=np.float64)
        if observed.shape != self._intrinsics.shape:
            raise ConfigurationError(
                f"observation is {observed.shape} but the observation model renders {self._intrinsics.shape}"
            )
        return observed.reshape(-1)

    def _pixel_terms(self, predicted: np.ndarray, observed: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """(mask, p_visible, p_occluded) for predicted (S, P) against observed (P,)."""
        mask = np.isfinite(predicted) & np.isfinite(observed)[None, :]
        d = np.where(mask, predicted, 1.0)
        y = np.where(np.isfinite(observed), observed, 0.0)[None, :]

        sigma = self._model_sigma + self._sigma_factor * d * d
        gaussian = np.exp(-0.5 * ((y - d) / sigma) ** 2) / (math.sqrt(2.0 * math.pi) * sigma)
        tail = self._tail_weight / self._max_depth
        p_visible = (1.0 - self._tail_weight) * gaussian + tail
        p_occluded = np.where(y < d, (1.0 - self._tail_weight) / d + tail, tail)
        return (mask, p_visible, p_occluded)

    def _score_chunk(
        self,
        states: np.ndarray,
        observed: np.ndarray,
        *,
        with_posterior: bool,
    ) -> tuple[np.ndarray, np.ndarray | None]:
        predicted = self._renderer.render_batch(states, self._intrinsics).reshape(len(states), -1)
        mask, p_visible, p_occluded = self._pixel_terms(predicted, observed)

        occlusion = self._occlusion[None, :]
        hidden = occlusion * p_occluded
        p = (1.0 - occlusion) * p_visible + hidden
        loglik = np.sum(np.where(mask, np.log(p) + math.log(self._max_depth), 0.0), axis=1)
        if not with_posterior:
            return (loglik, None)
        return (loglik, np.where(mask, hidden / p, occlusion))

    def _evaluate(
        self,
        states: np.ndarray,
        observation: np.ndarray,
        prior_log_weights: np.ndarray | None,
        *,
        add_likelihood: bool,
    ) -> tuple[np.ndarray, np.ndarray | None]:
        """Log-likelihoods of `states` and, when `prior_log_weights` is given, the
        occlusion posterior averaged under weights `prior (+ loglik)`.

        The weighted average is accumulated chunk by chunk with a running
        log-sum-exp shift.
        """
        observed = self._check_observation(observation)
        states = np.atleast_2d(np.asarray(states, dtype=np.float64))
        loglik = np.empty(len(states), dtype=np.float64)
        with_posterior = prior_log_weights is not None

        total = np.zeros_like(self._occlusion)
        unweighted = np.zeros_like(self._occlusion)
        norm = 0.0
        shift = -np.inf
        for start in range(0, len(states), self._chunk_size):
            stop = min(start + self._chunk_size, len(states))
            chunk_loglik, posterior = self._score_chunk(states[start:stop], observed, with_posterior=with_posterior)
            loglik[start:stop] = chunk_loglik
            if posterior is None:
                continue

            log_weights = np.asarray(prior_log_weights[start:stop], dtype=np.float64)
            if add_likelihood:
                log_weights = log_weights + chunk_loglik
            unweighted += np.sum(posterior, axis=0)
            finite = np.isfinite(log_weights)
            if not np.any(finite):
                continue
            chunk_shift = float(np.max(log_weights[finite]))
            if chunk_shift > shift:
                rescale = math.exp(shift - chunk_shift) if np.isfinite(shift) else 0.0
                total *= rescale
                norm *= rescale
                shift = chunk_shift
            weights = np.where(finite, np.exp(log_weights - shift), 0.0)
            total += weights @ posterior
            norm += float(np.sum(weights))

        if not with_posterior:
            return (loglik, None)
        if norm > 0.0:
            return (loglik, np.clip(total / norm, 0.0, 1.0))
        return (loglik, np.clip(unweighted / max(1, len(states)), 0.0, 1.0))

    def log_likelihoods(self, states: np.ndarray, observation: np.ndarray) -> np.ndarray:
        loglik, _ = self._evaluate(states, observation, None, add_likelihood=False)
        return loglik

    def update(self, states: np.ndarray, observation: np.ndarray, prior_log_weights: np.ndarray) -> np.ndarray:
        """Log-likelihoods of `states` and the occlusion update from the same render pass.

        The occlusion posterior is averaged under the updated weights
        `prior_log_weights + loglik`.
        """
        loglik, occlusion = self._evaluate(states, observation, prior_log_weights, add_likelihood=True)
        self._occlusion = occlusion
        return loglik

    def update_occlusion(self, states: np.ndarray, weights: np.ndarray, observation: np.ndarray) -> None:
        """Weighted posterior occlusion probability over the population."""
        with np.errstate(divide="ignore"):
            log_weights = np.log(np.asarray(weights, dtype=np.float64))
        _, occlusion = self._evaluate(states, observation, log_weights, add_likelihood=False)
        self._occlusion = occlusion


class CoordinateParticleFilter(RecursiveFilter):
    """Particle filter that perturbs and reweights one sampling block at a time."""

    def __init__(
        self,
        *,
        process_model: BrownianMotionModel,
        observation_model: DepthObservationModel,
        sampling_blocks: Sequence[Sequence[int]],
        max_kl_divergence: float,
        resampler: Resampler | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._process_model = process_model
        self._observation_model = observation_model
        self._blocks = [list(block) for block in sampling_blocks]
        self._max_kl_divergence = float(max_kl_divergence)
        self._resampler = resampler or SystematicResampler()
        self._rng = rng or random.Random()
        self._noise_rng = np.random.default_rng(self._rng.getrandbits(63))
        self._samples = np.empty((0, 0), dtype=np.float64)
        self._log_weights = np.empty((0,), dtype=np.float64)
        self._loglik: np.ndarray | None = None

    @property
    def population(self) -> np.ndarray:
        return self._samples

    @property
    def weights(self) -> np.ndarray:
        return _normalize_log_weights(self._log_weights)

    @property
    def sampling_blocks(self) -> list[list[int]]:
        return [list(block) for block in self._blocks]

    @property
    def observation_model(self) -> DepthObservationModel:
        return self._observation_model

    def set_population(self, samples: np.ndarray) -> None:
        arr = np.array(np.atleast_2d(samples), dtype=np.float64, copy=True)
        self._samples = arr
        self._log_weights = np.zeros(len(arr), dtype=np.float64)
        self._loglik = None

    def set_sampling_blocks(self, blocks: Sequence[Sequence[int]]) -> None:
        self._blocks = [list(block) for block in blocks]

    def predict_update(self, observation: np.ndarray, elapsed_time: float, control: np.ndarray) -> None:
        if self._samples.size == 0:
            raise RuntimeError("filter population is empty")

        self._observation_model.predict_occlusion(elapsed_time)
        previous: np.ndarray | None = None
        last = len(self._blocks) - 1
        for position, block in enumerate(self._blocks):
            self._samples = self._process_model.propagate(
                self._samples, block, elapsed_time, control, self._noise_rng
            )
            prior = self._log_weights - (previous if previous is not None else 0.0)
            if position == last:
                # the final render also yields the occlusion posterior
                loglik = self._observation_model.update(self._samples, observation, prior)
            else:
                loglik = self._observation_model.log_likelihoods(self._samples, observation)
            self._log_weights = prior + loglik
            previous = loglik
            self._loglik = loglik

            kl = kl_divergence_from_uniform(self.weights)
            if kl > self._max_kl_divergence:
                logger.debug("kl divergence %.3f above %.3f, resampling", kl, self._max_kl_divergence)
                previous = self._resample_indices(len(self._samples), previous)

    def _resample_indices(self, count: int, loglik: np.ndarray | None) -> np.ndarray | None:
        indices = self._resampler.indices(self.weights, count, self._rng)
        self._samples = self._samples[indices]
        self._log_weights = np.zeros(len(indices), dtype=np.float64)
        if loglik is None:
            self._loglik = None
            return None
        self._loglik = loglik[indices]
        return self._loglik

    def resample(self, count: int) -> None:
        if count < 1:
            raise ValueError("resample count must be >= 1")
        self._resample_indices(int(count), self._loglik)

    def mean_state(self) -> np.ndarray:
        if self._samples.size == 0:
            raise RuntimeError("cannot compute the mean of an empty population")
        return np.average(self._samples, axis=0, weights=self.weights)


def build_reference_filter(
    config: TrackerConfig,
    layout: BodyStateModel,
    renderer: Renderer,
    intrinsics: CameraIntrinsics,
    *,
    rng: random.Random | None = None,
) -> CoordinateParticleFilter:
    """CPU coordinate particle filter for `intrinsics` (already downsampled)."""
    if config.use_gpu:
        require_assets(config.shader_paths, kind="shader")
        logger.warning("no GPU observation model is available, using the CPU observation model")

    process = BrownianMotionModel.for_layout(
        layout,
        linear_sigma=config.linear_acceleration_sigma,
        angular_sigma=config.angular_acceleration_sigma,
        joint_sigmas=config.joint_sigmas,
        damping=config.damping,
    )
    observation = DepthObservationModel(
        renderer,
        intrinsics,
        tail_weight=config.tail_weight,
        model_sigma=config.model_sigma,
        sigma_factor=config.sigma_factor,
        max_depth_m=config.max_depth_m,
        p_occluded_visible=config.p_occluded_visible,
        p_occluded_occluded=config.p_occluded_occluded,
        initial_occlusion_prob=config.initial_occlusion_prob,
        occlusion_delta_time_s=config.occlusion_delta_time_s,
    )
    return CoordinateParticleFilter(
        process_model=process,
        observation_model=observation,
        sampling_blocks=config.steady_sampling_blocks(layout),
        max_kl_divergence=config.max_kl_divergence,
        resampler=build_resampler(config.resampler),
        rng=rng or random.Random(config.seed),
    )
