"""rio_fusion: Radar-inertial odometry on a fixed-lag factor graph.

This package provides:
- IMU propagation segments that can be split at radar/baro timestamps
- An immutable wrapper around GTSAM combined IMU preintegration
- Doppler, bearing-range and barometric height factors
- A graph accumulator and a fixed-lag smoother adapter
- Batch radar-IMU extrinsic calibration with Levenberg-Marquardt
- An asynchronous sliding-window optimizer that reconciles the
  caller's trajectory with each solution

Design intent:
The optimizer never blocks the sensor callbacks. Graph building is
cheap and synchronous; solving happens on one worker thread and the
result is merged back on request.
"""
__all__ = ["calibration", "config", "errors", "factors", "graph", "models", "optimization",
           "preintegration", "propagation", "robust", "smoother", "state"]
__version__ = "0.1.0"
