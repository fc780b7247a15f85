import numpy as np
import pytest

from qkconv import config
from qkconv.conv2d import (
    BorderMode,
    convolve,
    convolve2d,
    full_output_size,
    full_padded_size,
    rotate180,
    valid_output_size,
)
from qkconv.errors import DimensionOverflow, ShapeMismatch


def reference_conv2d(_input, _kernel, stride=(1, 1), dilation=(1, 1)):
    """Sliding-window dot product, one output cell at a time."""
    kernel_h, kernel_w = _kernel.shape
    input_h, input_w = _input.shape
    out_h = (input_h - (kernel_h - 1) * dilation[0] - 1) // stride[0] + 1
    out_w = (input_w - (kernel_w - 1) * dilation[1] - 1) // stride[1] + 1
    output = np.zeros((out_h, out_w))
    for i in range(out_h):
        for j in range(out_w):
            s = 0.0
            for ki in range(kernel_h):
                for kj in range(kernel_w):
                    s += _kernel[ki, kj] * _input[i * stride[0] + ki * dilation[0],
                                                  j * stride[1] + kj * dilation[1]]
            output[i, j] = s
    return output


def reference_conv2d_full(_input, _kernel):
    kernel_h, kernel_w = _kernel.shape
    padded = np.pad(_input, ((kernel_h - 1, kernel_h - 1), (kernel_w - 1, kernel_w - 1)), mode='constant')
    return reference_conv2d(padded, _kernel)


def test_valid_matches_sliding_window():
    rng = np.random.default_rng(0)
    _input = rng.integers(-5, 6, size=(7, 9)).astype(np.float64)
    _kernel = rng.integers(-3, 4, size=(3, 4)).astype(np.float64)

    output = convolve2d(_input, _kernel)

    assert output.shape == (5, 6)
    assert np.array_equal(output, reference_conv2d(_input, _kernel))


def test_window_sums_with_ones_filter():
    _input = np.arange(16, dtype=np.float64).reshape(4, 4)

    output = convolve2d(_input, np.ones((3, 3)), mode="valid")

    expected = np.array([[_input[i:i + 3, j:j + 3].sum() for j in range(2)] for i in range(2)])
    assert output.shape == (2, 2)
    assert np.array_equal(output, expected)


@pytest.mark.parametrize("stride,dilation", [((2, 1), (1, 1)), ((1, 3), (2, 1)), ((2, 2), (2, 2))])
def test_valid_stride_and_dilation(stride, dilation):
    rng = np.random.default_rng(1)
    _input = rng.integers(-4, 5, size=(11, 12)).astype(np.float64)
    _kernel = rng.integers(-2, 3, size=(3, 2)).astype(np.float64)

    output = convolve2d(_input, _kernel, stride_width=stride[1], stride_height=stride[0],
                        dilation_width=dilation[1], dilation_height=dilation[0])

    assert output.shape == (valid_output_size(11, 3, stride[0], dilation[0]),
                            valid_output_size(12, 2, stride[1], dilation[1]))
    assert np.array_equal(output, reference_conv2d(_input, _kernel, stride, dilation))


def test_full_mode_length():
    _input = np.arange(1, 6, dtype=np.float64).reshape(1, 5)
    _kernel = np.array([[1.0, -2.0, 3.0]])

    output = convolve2d(_input, _kernel, mode=BorderMode.FULL)

    assert output.shape == (1, 5 + 3 - 1)
    assert np.array_equal(output, reference_conv2d_full(_input, _kernel))


def test_full_mode_2d_matches_padded_reference():
    rng = np.random.default_rng(2)
    _input = rng.integers(-3, 4, size=(4, 5)).astype(np.float64)
    _kernel = rng.integers(-3, 4, size=(2, 3)).astype(np.float64)

    output = convolve2d(_input, _kernel, mode="full")

    assert output.shape == (4 + 2 - 1, 5 + 3 - 1)
    assert np.array_equal(output, reference_conv2d_full(_input, _kernel))


def test_full_padded_size():
    assert full_padded_size(5, 3) == 5 + 2 * 2
    assert full_padded_size(3, 2, stride=2) == 7
    assert full_padded_size(4, 3, stride=3, dilation=2) == 3 * 3 + 2 * 2 * 2 + 1
    assert full_output_size(5, 3) == 7
    assert full_output_size(4, 3, stride=2) == (4 - 1) * 2 + 3


@pytest.mark.parametrize("stride", [1, 2, 3])
def test_full_mode_is_adjoint_of_strided_valid(stride):
    # <valid(x, f), e> == <x, full(e, rot180(f))> over the region full mode reaches.
    rng = np.random.default_rng(3)
    x = rng.standard_normal((10, 11))
    f = rng.standard_normal((3, 2))
    forward = convolve2d(x, f, stride_width=stride, stride_height=stride)
    e = rng.standard_normal(forward.shape)

    back = convolve2d(e, rotate180(f), stride_width=stride, stride_height=stride, mode=BorderMode.FULL)

    rows = min(back.shape[0], x.shape[0])
    cols = min(back.shape[1], x.shape[1])
    lhs = np.sum(forward * e)
    rhs = np.sum(x[:rows, :cols] * back[:rows, :cols])
    assert np.isclose(lhs, rhs, atol=1e-10)


def test_accumulate_adds_into_output():
    rng = np.random.default_rng(4)
    _input = rng.standard_normal((6, 6))
    _kernel = rng.standard_normal((3, 3))
    output = np.full((4, 4), 2.0)

    result = convolve2d(_input, _kernel, output=output, accumulate=True)

    assert result is output
    assert np.allclose(output, 2.0 + reference_conv2d(_input, _kernel))


def test_output_is_overwritten_without_accumulate():
    _input = np.ones((3, 3))
    output = np.full((2, 2), 100.0)

    convolve2d(_input, np.ones((2, 2)), output=output)

    assert np.array_equal(output, np.full((2, 2), 4.0))


def test_output_shape_is_checked():
    with pytest.raises(ShapeMismatch):
        convolve2d(np.ones((5, 5)), np.ones((3, 3)), output=np.zeros((2, 2)), accumulate=True)


def test_filter_larger_than_input():
    with pytest.raises(DimensionOverflow):
        convolve2d(np.ones((3, 3)), np.ones((4, 2)))
    with pytest.raises(DimensionOverflow):
        convolve2d(np.ones((5, 5)), np.ones((3, 3)), dilation_width=3)


def test_invalid_stride():
    with pytest.raises(ValueError):
        convolve2d(np.ones((5, 5)), np.ones((3, 3)), stride_width=0)


def test_rotate180():
    _kernel = np.array([[1.0, 2.0], [3.0, 4.0]])
    assert np.array_equal(rotate180(_kernel), np.array([[4.0, 3.0], [2.0, 1.0]]))


def test_cube_by_cube():
    rng = np.random.default_rng(5)
    _input = rng.standard_normal((3, 6, 5))
    _kernel = rng.standard_normal((3, 2, 2))

    output = convolve(_input, _kernel, stride_width=2)

    assert output.shape == (3, 5, 2)
    for i in range(3):
        assert np.allclose(output[i], reference_conv2d(_input[i], _kernel[i], stride=(1, 2)))


def test_matrix_by_cube_and_cube_by_matrix():
    rng = np.random.default_rng(6)
    matrix = rng.standard_normal((5, 5))
    cube = rng.standard_normal((4, 2, 3))

    output = convolve(matrix, cube, mode=BorderMode.FULL)
    assert output.shape == (4, 6, 7)
    for i in range(4):
        assert np.allclose(output[i], reference_conv2d_full(matrix, cube[i]))

    cube = rng.standard_normal((2, 5, 5))
    _kernel = rng.standard_normal((3, 3))
    output = convolve(cube, _kernel)
    assert output.shape == (2, 3, 3)
    for i in range(2):
        assert np.allclose(output[i], reference_conv2d(cube[i], _kernel))


def test_cube_depth_mismatch():
    with pytest.raises(ShapeMismatch):
        convolve(np.ones((3, 4, 4)), np.ones((2, 2, 2)))


def test_column_parallel_matches_sequential(monkeypatch):
    rng = np.random.default_rng(7)
    _input = rng.standard_normal((9, 80))
    _kernel = rng.standard_normal((3, 4))

    monkeypatch.setitem(config.DEFAULT_CONFIG, "num_threads", 1)
    sequential = convolve2d(_input, _kernel, stride_width=2)

    monkeypatch.setitem(config.DEFAULT_CONFIG, "num_threads", 4)
    monkeypatch.setitem(config.DEFAULT_CONFIG, "column_parallel_threshold", 16)
    parallel = convolve2d(_input, _kernel, stride_width=2)

    assert np.array_equal(sequential, parallel)


def test_matches_torch_conv2d():
    torch = pytest.importorskip("torch")
    F = torch.nn.functional
    rng = np.random.default_rng(8)
    _input = rng.standard_normal((13, 14))
    _kernel = rng.standard_normal((3, 4))

    output = convolve2d(_input, _kernel, stride_width=2, stride_height=3,
                        dilation_width=2, dilation_height=1)

    conv_ref = F.conv2d(torch.from_numpy(_input)[None, None], torch.from_numpy(_kernel)[None, None],
                        stride=(3, 2), dilation=(1, 2))[0, 0].numpy()
    assert output.shape == conv_ref.shape
    assert np.allclose(output, conv_ref, atol=1e-10)
