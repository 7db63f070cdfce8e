import pytest

from visualslam.viewer import ViewerControl, ViewerSettings


def test_settings_defaults_when_missing():
    settings = ViewerSettings.from_mapping({})
    assert settings.frame_period_ms == pytest.approx(1e3 / 30)
    assert (settings.image_width, settings.image_height) == (640, 480)
    assert settings.viewpoint_f == 0.0


def test_settings_reads_values():
    data = {
        "Camera.fps": 20,
        "Camera.width": 1241,
        "Camera.height": 376,
        "Viewer.ViewpointX": 0,
        "Viewer.ViewpointY": -0.7,
        "Viewer.ViewpointZ": -1.8,
        "Viewer.ViewpointF": 500,
    }
    settings = ViewerSettings.from_mapping(data)
    assert settings.frame_period_ms == pytest.approx(1e3 / 20)
    assert (settings.image_width, settings.image_height) == (1241, 376)
    assert (settings.viewpoint_y, settings.viewpoint_z, settings.viewpoint_f) == (-0.7, -1.8, 500.0)


def test_settings_low_fps_falls_back():
    settings = ViewerSettings.from_mapping({"Camera.fps": 0.5})
    assert settings.frame_period_ms == pytest.approx(1e3 / 30)


def test_settings_invalid_size_falls_back():
    settings = ViewerSettings.from_mapping({"Camera.width": 800, "Camera.height": 0})
    assert (settings.image_width, settings.image_height) == (640, 480)


def test_control_initial_state():
    control = ViewerControl()
    assert control.is_finished() is True
    assert control.is_stopped() is True
    assert control.check_finish() is False


def test_request_stop_ignored_while_stopped():
    control = ViewerControl()
    control.request_stop()
    assert control.stop() is False


def test_stop_handshake_after_start():
    control = ViewerControl()
    control.start()
    assert control.is_stopped() is False
    assert control.is_finished() is False
    control.request_stop()
    assert control.stop() is True
    assert control.is_stopped() is True
    assert control.stop() is False
    control.release()
    assert control.is_stopped() is False


def test_finish_request_blocks_stop():
    control = ViewerControl()
    control.start()
    control.request_stop()
    control.request_finish()
    assert control.check_finish() is True
    assert control.stop() is False
    assert control.is_stopped() is False


def test_set_finish():
    control = ViewerControl()
    control.start()
    control.set_finish()
    assert control.is_finished() is True