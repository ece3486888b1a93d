import logging

import numpy as np
import pytest

from rio_fusion.models import (ImuSample, RadarDetection, RadarScan, RadarTrack,
                               filter_detections, trim_static_scans)


def test_zero_order_hold_keeps_measurement():
    sample = ImuSample(1.0, [0.1, 0.2, 9.8], [0.0, 0.0, 0.3], frame_id="imu_link")
    held = sample.zero_order_hold(1.25)

    assert held.stamp == 1.25
    assert held.frame_id == "imu_link"
    np.testing.assert_array_equal(held.linear_acceleration, sample.linear_acceleration)
    np.testing.assert_array_equal(held.angular_velocity, sample.angular_velocity)


def test_filter_detections_drops_close_targets(caplog):
    near = RadarDetection(0.05, 0.0, 0.0, 1.0)
    far = RadarDetection(0.0, 0.5, 0.0, -1.0)
    with caplog.at_level(logging.WARNING, logger="rio_fusion.models"):
        kept = filter_detections([near, far])

    assert kept == [far]
    assert "0.0500" in caplog.text
    assert far.distance() == pytest.approx(0.5)


def test_track_added_flag_is_shared():
    track = RadarTrack(1, [1.0, 2.0, 3.0])
    alias = [track][0]
    assert not alias.is_added()
    track.set_added()
    assert alias.is_added()


def _scan(stamp, *velocities):
    return RadarScan(stamp, [RadarDetection(5.0, 0.0, 0.0, v) for v in velocities])


def test_trim_static_scans_keeps_one_static_scan_at_each_end():
    scans = [_scan(0, 0.0), _scan(1, 0.0), RadarScan(1.5), _scan(2, 0.0, 0.0),
             _scan(3, 0.4), _scan(4, -0.2, 0.0), _scan(5, 0.0), _scan(6, 0.0)]

    trimmed = trim_static_scans(scans)

    assert [s.stamp for s in trimmed] == [2, 3, 4, 5]


def test_trim_static_scans_without_motion():
    assert trim_static_scans([_scan(0, 0.0), _scan(1, 0.0)]) == []
    assert trim_static_scans([]) == []
