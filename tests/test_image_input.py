import numpy as np
import pytest

from visualslam.image_input import (
    count_close_points,
    scale_depth,
    select_close_points,
    to_grayscale,
)


def _colour_image():
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(6, 5, 3), dtype=np.uint8)


def test_grayscale_image_is_returned_unchanged():
    img = np.arange(12, dtype=np.uint8).reshape(3, 4)
    out = to_grayscale(img, rgb=True)
    assert np.array_equal(out, img)


def test_single_channel_image_is_squeezed():
    img = np.arange(12, dtype=np.uint8).reshape(3, 4, 1)
    out = to_grayscale(img, rgb=False)
    assert out.shape == (3, 4)
    assert np.array_equal(out, img[..., 0])


def test_rgb_and_bgr_orders_agree_on_reversed_channels():
    rgb_img = _colour_image()
    bgr_img = rgb_img[..., ::-1]
    assert np.array_equal(to_grayscale(rgb_img, rgb=True), to_grayscale(bgr_img, rgb=False))


def test_channel_order_matters():
    img = np.zeros((1, 1, 3), dtype=np.uint8)
    img[0, 0, 0] = 255
    as_rgb = to_grayscale(img, rgb=True)
    as_bgr = to_grayscale(img, rgb=False)
    assert as_rgb[0, 0] > as_bgr[0, 0]


def test_alpha_channel_is_ignored():
    rgb_img = _colour_image()
    alpha = np.full(rgb_img.shape[:2] + (1,), 17, dtype=np.uint8)
    rgba = np.concatenate([rgb_img, alpha], axis=2)
    assert np.array_equal(to_grayscale(rgba, rgb=True), to_grayscale(rgb_img, rgb=True))
    assert np.array_equal(to_grayscale(rgba, rgb=False), to_grayscale(rgb_img, rgb=False))


def test_grey_pixels_keep_their_level_and_dtype():
    levels = np.array([0, 1, 100, 254, 255], dtype=np.uint8)
    img = np.repeat(levels[None, :, None], 3, axis=2)
    out = to_grayscale(img, rgb=True)
    assert out.dtype == np.uint8
    assert np.array_equal(out[0], levels)


def test_grayscale_bad_shape_raises():
    with pytest.raises(ValueError):
        to_grayscale(np.zeros((2, 2, 2), dtype=np.uint8), rgb=True)
    with pytest.raises(ValueError):
        to_grayscale(np.zeros(5, dtype=np.uint8), rgb=True)


def test_scale_depth_keeps_float32_with_unit_factor():
    depth = np.array([[0.5, 1.5]], dtype=np.float32)
    out = scale_depth(depth, 1.0)
    assert out is depth


def test_scale_depth_converts_integer_map():
    depth = np.array([[5000, 0, 10000]], dtype=np.uint16)
    out = scale_depth(depth, 1.0 / 5000.0)
    assert out.dtype == np.float32
    assert np.allclose(out, [[1.0, 0.0, 2.0]])


def test_scale_depth_converts_integer_map_with_unit_factor():
    depth = np.array([3, 4], dtype=np.uint16)
    out = scale_depth(depth, 1.0)
    assert out.dtype == np.float32
    assert np.array_equal(out, depth.astype(np.float32))


def test_select_close_points_orders_by_depth_and_skips_invalid():
    depths = [3.0, -1.0, 1.0, 0.0, 2.0]
    assert select_close_points(depths, th_depth=10.0) == [2, 4, 0]


def test_select_close_points_takes_all_when_few():
    depths = [0.5, 20.0, 30.0, 1.0]
    assert sorted(select_close_points(depths, th_depth=2.0)) == [0, 1, 2, 3]


def test_select_close_points_many_close_adds_one_far():
    close = [1.0 + 0.01 * i for i in range(150)]
    far = [50.0 + i for i in range(10)]
    depths = close + far
    selected = select_close_points(depths, th_depth=5.0)
    assert len(selected) == len(close) + 1
    assert set(range(len(close))) <= set(selected)
    assert selected[-1] == len(close)


def test_select_close_points_few_close_caps_total():
    close = [1.0, 2.0, 3.0]
    far = [10.0 + i for i in range(300)]
    selected = select_close_points(close + far, th_depth=5.0)
    assert selected[:3] == [0, 1, 2]
    assert len(selected) < len(close) + len(far)
    assert all(selected[i] < selected[i + 1] for i in range(len(selected) - 1))


def test_count_close_points():
    depths = [1.0, 2.0, 0.0, 10.0, 3.0, -1.0]
    tracked = [True, False, True, True, False, False]
    assert count_close_points(depths, tracked, th_depth=5.0) == (1, 2)


def test_count_close_points_length_mismatch():
    with pytest.raises(ValueError):
        count_close_points([1.0, 2.0], [True], th_depth=5.0)


def test_count_close_points_total_matches_close_selection():
    depths = [0.5, 1.5, 7.0, 2.5, 0.0]
    tracked = [True, True, False, False, True]
    t, n = count_close_points(depths, tracked, th_depth=3.0)
    assert t + n == sum(1 for z in depths if 0 < z < 3.0)