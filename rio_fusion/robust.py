from typing import Optional, Sequence, Union
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Jitter a covariance to be SPD if needed.

    Why: hand-tuned sensor covariances are sometimes nearly singular.
    We add diagonal jitter to ensure positive definiteness for GTSAM.
    """
    cov = np.atleast_2d(np.array(cov, dtype=float))
    n = cov.shape[0]
    cov = 0.5 * (cov + cov.T)
    jitter = eps
    for _ in range(8):
        try:
            np.linalg.cholesky(cov + np.eye(n) * jitter)
            return cov + np.eye(n) * jitter
        except np.linalg.LinAlgError:
            jitter *= 10.0
    return cov + np.eye(n) * jitter


def gaussian_from_covariance(cov: np.ndarray):
    """Create a GTSAM Gaussian noise model from an n x n covariance."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    cov = np.array(make_spd(cov), dtype=np.float64, order="C")
    return gtsam.noiseModel.Gaussian.Covariance(cov)


def diagonal_from_sigmas(sigmas: Union[Sequence[float], np.ndarray]):
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    return gtsam.noiseModel.Diagonal.Sigmas(np.asarray(sigmas, dtype=np.float64).reshape(-1))


def isotropic(dim: int, sigma: float):
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    return gtsam.noiseModel.Isotropic.Sigma(int(dim), float(sigma))


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """Wrap a base noise model with a robust kernel.

    kind: 'huber' | 'cauchy' | None
    k: tuning constant (default: Huber 1.345, Cauchy 1.0)
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build robust model")
    if not kind or kind.lower() == "none":
        return base
    kind = kind.lower()
    if kind == "huber":
        k = 1.345 if k is None else k
        loss = gtsam.noiseModel.mEstimator.Huber(k)
    elif kind == "cauchy":
        k = 1.0 if k is None else k
        loss = gtsam.noiseModel.mEstimator.Cauchy(k)
    else:
        raise ValueError(f"Unsupported robust kernel: {kind}")
    return gtsam.noiseModel.Robust.Create(loss, base)
