"""Radar and barometer measurement factors.

All factors are ``gtsam.CustomFactor`` instances backed by the error
functions below. Jacobians are analytic where the model is linear in the
tangent space (Doppler, height) and central differences on the manifold for
the bearing-range model.

Conventions: Pose3 tangent = [rotation, translation] with right
perturbation, ConstantBias tangent = [accelerometer, gyroscope].
"""
from functools import partial
from typing import List, Optional, Tuple
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

_NUMERIC_EPS = 1e-6


def skew(v: np.ndarray) -> np.ndarray:
    return np.array([[0.0, -v[2], v[1]],
                     [v[2], 0.0, -v[0]],
                     [-v[1], v[0], 0.0]])


def unit_basis(direction: np.ndarray) -> np.ndarray:
    """3x2 orthonormal basis of the tangent plane of a unit direction."""
    n = np.asarray(direction, dtype=float)
    n = n / np.linalg.norm(n)
    axis = np.eye(3)[int(np.argmin(np.abs(n)))]
    b1 = np.cross(n, axis)
    b1 /= np.linalg.norm(b1)
    b2 = np.cross(n, b1)
    return np.column_stack([b1, b2])


# ----------------------------------------------------------------------
# Doppler
# ----------------------------------------------------------------------
def doppler_prediction(R_IB: np.ndarray, I_v_IB: np.ndarray, gyro_bias: np.ndarray,
                       B_omega_IB: np.ndarray, R_p_RT: np.ndarray, B_T_BR: "gtsam.Pose3"
                       ) -> Tuple[float, np.ndarray, np.ndarray, np.ndarray]:
    """Predicted radial velocity of a static target and its partials.

    The sensor velocity is the body velocity plus the lever-arm term
    (omega - b_g) x B_t_BR, rotated into the radar frame and projected on the
    target-to-sensor direction. Returns (h, dh/drot, dh/dv, dh/db_g).
    """
    R_BR = B_T_BR.rotation().matrix()
    B_t_BR = np.asarray(B_T_BR.translation(), dtype=float).reshape(3)
    p = np.asarray(R_p_RT, dtype=float)
    a = R_BR @ (-p / np.linalg.norm(p))
    B_v_IB = R_IB.T @ I_v_IB
    omega = B_omega_IB - gyro_bias
    h = float(a @ (B_v_IB + np.cross(omega, B_t_BR)))
    H_rot = a @ skew(B_v_IB)
    H_vel = R_IB @ a
    H_bg = a @ skew(B_t_BR)
    return h, H_rot, H_vel, H_bg


def doppler_residual(pose: "gtsam.Pose3", velocity: np.ndarray, bias, B_omega_IB: np.ndarray,
                     R_p_RT: np.ndarray, radial_velocity: float, B_T_BR: "gtsam.Pose3") -> float:
    """Unwhitened Doppler residual (prediction minus measurement)."""
    h, _, _, _ = doppler_prediction(pose.rotation().matrix(), np.asarray(velocity, dtype=float),
                                    np.asarray(bias.gyroscope(), dtype=float), B_omega_IB,
                                    R_p_RT, B_T_BR)
    return h - radial_velocity


def _error_doppler(measurement: Tuple[np.ndarray, float, np.ndarray, "gtsam.Pose3"],
                   this: "gtsam.CustomFactor", values: "gtsam.Values",
                   jacobians: Optional[List[np.ndarray]]) -> np.ndarray:
    R_p_RT, radial_velocity, B_omega_IB, B_T_BR = measurement
    keys = this.keys()
    pose = values.atPose3(keys[0])
    velocity = values.atVector(keys[1])
    bias = values.atConstantBias(keys[2])
    R_IB = pose.rotation().matrix()
    h, H_rot, H_vel, H_bg = doppler_prediction(R_IB, np.asarray(velocity, dtype=float),
                                               np.asarray(bias.gyroscope(), dtype=float),
                                               B_omega_IB, R_p_RT, B_T_BR)
    if jacobians is not None:
        jacobians[0] = np.hstack([H_rot, np.zeros(3)]).reshape(1, 6)
        jacobians[1] = H_vel.reshape(1, 3)
        jacobians[2] = np.hstack([np.zeros(3), H_bg]).reshape(1, 6)
    return np.array([h - radial_velocity])


def make_doppler_factor(pose_key: int, velocity_key: int, bias_key: int,
                        R_p_RT: np.ndarray, radial_velocity: float, B_omega_IB: np.ndarray,
                        B_T_BR: "gtsam.Pose3", noise_model) -> "gtsam.CustomFactor":
    measurement = (np.asarray(R_p_RT, dtype=float).reshape(3), float(radial_velocity),
                   np.asarray(B_omega_IB, dtype=float).reshape(3), B_T_BR)
    return gtsam.CustomFactor(noise_model, [pose_key, velocity_key, bias_key],
                              partial(_error_doppler, measurement))


def _error_doppler_extrinsic(measurement: Tuple[np.ndarray, float, np.ndarray],
                             this: "gtsam.CustomFactor", values: "gtsam.Values",
                             jacobians: Optional[List[np.ndarray]]) -> np.ndarray:
    R_p_RT, radial_velocity, B_omega_IB = measurement
    keys = this.keys()
    pose = values.atPose3(keys[0])
    velocity = np.asarray(values.atVector(keys[1]), dtype=float)
    gyro_bias = np.asarray(values.atConstantBias(keys[2]).gyroscope(), dtype=float)
    B_T_BR = values.atPose3(keys[3])
    R_IB = pose.rotation().matrix()
    h, H_rot, H_vel, H_bg = doppler_prediction(R_IB, velocity, gyro_bias, B_omega_IB, R_p_RT, B_T_BR)
    if jacobians is not None:
        jacobians[0] = np.hstack([H_rot, np.zeros(3)]).reshape(1, 6)
        jacobians[1] = H_vel.reshape(1, 3)
        jacobians[2] = np.hstack([np.zeros(3), H_bg]).reshape(1, 6)
        H_ext = np.zeros((1, 6))
        for i in range(6):
            d = np.zeros(6)
            d[i] = _NUMERIC_EPS
            plus = doppler_prediction(R_IB, velocity, gyro_bias, B_omega_IB, R_p_RT, B_T_BR.retract(d))[0]
            minus = doppler_prediction(R_IB, velocity, gyro_bias, B_omega_IB, R_p_RT, B_T_BR.retract(-d))[0]
            H_ext[0, i] = (plus - minus) / (2.0 * _NUMERIC_EPS)
        jacobians[3] = H_ext
    return np.array([h - radial_velocity])


def make_doppler_extrinsic_factor(pose_key: int, velocity_key: int, bias_key: int, extrinsic_key: int,
                                  R_p_RT: np.ndarray, radial_velocity: float, B_omega_IB: np.ndarray,
                                  noise_model) -> "gtsam.CustomFactor":
    """Doppler factor with the radar extrinsic B_T_BR as an estimated variable."""
    measurement = (np.asarray(R_p_RT, dtype=float).reshape(3), float(radial_velocity),
                   np.asarray(B_omega_IB, dtype=float).reshape(3))
    return gtsam.CustomFactor(noise_model, [pose_key, velocity_key, bias_key, extrinsic_key],
                              partial(_error_doppler_extrinsic, measurement))


# ----------------------------------------------------------------------
# Bearing + range to a landmark
# ----------------------------------------------------------------------
def bearing_range_residual(pose: "gtsam.Pose3", landmark: np.ndarray,
                           R_p_RT: np.ndarray, B_T_BR: "gtsam.Pose3") -> np.ndarray:
    """[bearing (2), range (1)] error of `landmark` seen from the radar.

    The bearing error is the predicted direction projected on the tangent
    basis of the measured direction.
    """
    T_IR = pose.compose(B_T_BR)
    predicted = np.asarray(T_IR.transformTo(np.asarray(landmark, dtype=float)), dtype=float)
    measured = np.asarray(R_p_RT, dtype=float)
    pred_range = np.linalg.norm(predicted)
    e_bearing = unit_basis(measured).T @ (predicted / pred_range)
    return np.hstack([e_bearing, pred_range - np.linalg.norm(measured)])


def _error_bearing_range(measurement: Tuple[np.ndarray, "gtsam.Pose3"],
                         this: "gtsam.CustomFactor", values: "gtsam.Values",
                         jacobians: Optional[List[np.ndarray]]) -> np.ndarray:
    R_p_RT, B_T_BR = measurement
    keys = this.keys()
    pose = values.atPose3(keys[0])
    landmark = np.asarray(values.atVector(keys[1]), dtype=float)
    error = bearing_range_residual(pose, landmark, R_p_RT, B_T_BR)
    if jacobians is not None:
        H_pose = np.zeros((3, 6))
        H_point = np.zeros((3, 3))
        for i in range(6):
            d = np.zeros(6)
            d[i] = _NUMERIC_EPS
            plus = bearing_range_residual(pose.retract(d), landmark, R_p_RT, B_T_BR)
            minus = bearing_range_residual(pose.retract(-d), landmark, R_p_RT, B_T_BR)
            H_pose[:, i] = (plus - minus) / (2.0 * _NUMERIC_EPS)
        for i in range(3):
            d = np.zeros(3)
            d[i] = _NUMERIC_EPS
            plus = bearing_range_residual(pose, landmark + d, R_p_RT, B_T_BR)
            minus = bearing_range_residual(pose, landmark - d, R_p_RT, B_T_BR)
            H_point[:, i] = (plus - minus) / (2.0 * _NUMERIC_EPS)
        jacobians[0] = H_pose
        jacobians[1] = H_point
    return error


def make_bearing_range_factor(pose_key: int, landmark_key: int, R_p_RT: np.ndarray,
                              B_T_BR: "gtsam.Pose3", noise_model) -> "gtsam.CustomFactor":
    measurement = (np.asarray(R_p_RT, dtype=float).reshape(3), B_T_BR)
    return gtsam.CustomFactor(noise_model, [pose_key, landmark_key],
                              partial(_error_bearing_range, measurement))


# ----------------------------------------------------------------------
# Barometric height
# ----------------------------------------------------------------------
def baro_residual(pose: "gtsam.Pose3", height_bias: float, height: float) -> float:
    return float(np.asarray(pose.translation(), dtype=float)[2] + height_bias - height)


def _error_baro(measurement: Tuple[float, float], this: "gtsam.CustomFactor",
                values: "gtsam.Values", jacobians: Optional[List[np.ndarray]]) -> np.ndarray:
    height, height_bias = measurement
    pose = values.atPose3(this.keys()[0])
    if jacobians is not None:
        R = pose.rotation().matrix()
        jacobians[0] = np.hstack([np.zeros(3), R[2, :]]).reshape(1, 6)
    return np.array([baro_residual(pose, height_bias, height)])


def make_baro_factor(pose_key: int, height: float, height_bias: float,
                     noise_model) -> "gtsam.CustomFactor":
    return gtsam.CustomFactor(noise_model, [pose_key],
                              partial(_error_baro, (float(height), float(height_bias))))
