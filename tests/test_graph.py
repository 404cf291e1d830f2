import numpy as np
import pytest
import torch

from cropdoctor.services.errors import InferenceError
from cropdoctor.services.graph import DEFAULT_INPUT_SIZE, build_network


def _sequential(*layers):
    return {"class_name": "Sequential", "config": {"name": "seq", "layers": list(layers)}}


def _input(h=3, w=3, c=1):
    return {"class_name": "InputLayer", "config": {"name": "input_1", "batch_input_shape": [None, h, w, c]}}


def test_dense_matches_numpy():
    kernel = np.array([[1.0, 2.0], [3.0, 4.0]], dtype=np.float32)
    bias = np.array([0.5, -0.5], dtype=np.float32)
    net = build_network(
        _sequential({"class_name": "Dense", "config": {"name": "d", "units": 2, "activation": "linear",
                                                       "batch_input_shape": [None, 2]}}),
        {"d/kernel": kernel, "d/bias": bias},
    )
    out = net(torch.tensor([[1.0, 1.0]]))
    np.testing.assert_allclose(out.numpy(), [[4.5, 5.5]])


def test_same_conv_with_centre_kernel_is_identity():
    kernel = np.zeros((3, 3, 1, 1), dtype=np.float32)
    kernel[1, 1, 0, 0] = 1.0
    net = build_network(
        _sequential(_input(), {"class_name": "Conv2D", "config": {
            "name": "c", "filters": 1, "kernel_size": [3, 3], "padding": "same", "use_bias": False,
        }}),
        {"c/kernel": kernel},
    )
    x = torch.arange(9, dtype=torch.float32).reshape(1, 3, 3, 1)
    assert torch.equal(net(x), x)
    assert net.input_size == (3, 3)


def test_strided_same_conv_pads_like_tensorflow():
    # 4x4 input, 3x3 kernel, stride 2: TF pads 0 before and 1 after.
    kernel = np.zeros((3, 3, 1, 1), dtype=np.float32)
    kernel[0, 0, 0, 0] = 1.0
    net = build_network(
        _sequential(_input(4, 4), {"class_name": "Conv2D", "config": {
            "name": "c", "filters": 1, "kernel_size": [3, 3], "strides": [2, 2],
            "padding": "same", "use_bias": False,
        }}),
        {"c/kernel": kernel},
    )
    x = torch.arange(16, dtype=torch.float32).reshape(1, 4, 4, 1)
    out = net(x)
    assert out.shape == (1, 2, 2, 1)
    np.testing.assert_allclose(out[0, :, :, 0].numpy(), [[0.0, 2.0], [8.0, 10.0]])


def test_depthwise_and_batch_norm():
    dw = np.zeros((1, 1, 2, 1), dtype=np.float32)
    dw[0, 0, 0, 0] = 2.0
    dw[0, 0, 1, 0] = 3.0
    net = build_network(
        _sequential(
            _input(1, 1, 2),
            {"class_name": "DepthwiseConv2D", "config": {"name": "dw", "kernel_size": [1, 1], "use_bias": False}},
            {"class_name": "BatchNormalization", "config": {"name": "bn", "axis": [3], "epsilon": 0.0}},
        ),
        {
            "dw/depthwise_kernel": dw,
            "bn/gamma": np.array([1.0, 2.0], dtype=np.float32),
            "bn/beta": np.array([0.0, 1.0], dtype=np.float32),
            "bn/moving_mean": np.array([1.0, 0.0], dtype=np.float32),
            "bn/moving_variance": np.array([4.0, 1.0], dtype=np.float32),
        },
    )
    out = net(torch.tensor([[[[1.0, 1.0]]]]))
    # channel 0: (2 - 1) / 2 * 1 + 0 = 0.5; channel 1: (3 - 0) / 1 * 2 + 1 = 7
    np.testing.assert_allclose(out.reshape(-1).numpy(), [0.5, 7.0])


def test_relu6_and_pooling():
    net = build_network(
        _sequential(
            _input(2, 2, 1),
            {"class_name": "ReLU", "config": {"name": "r", "max_value": 6.0}},
            {"class_name": "MaxPooling2D", "config": {"name": "p", "pool_size": [2, 2], "padding": "valid"}},
            {"class_name": "Flatten", "config": {"name": "f"}},
        ),
        {},
    )
    x = torch.tensor([[[[-3.0], [2.0]], [[9.0], [1.0]]]])
    np.testing.assert_allclose(net(x).numpy(), [[6.0]])


def test_functional_graph_with_residual_add():
    topology = {
        "class_name": "Functional",
        "config": {
            "name": "model",
            "layers": [
                {"class_name": "InputLayer", "name": "inp",
                 "config": {"name": "inp", "batch_input_shape": [None, 2]}, "inbound_nodes": []},
                {"class_name": "Dense", "name": "a", "config": {"name": "a", "activation": "linear"},
                 "inbound_nodes": [[["inp", 0, 0, {}]]]},
                {"class_name": "Add", "name": "add", "config": {"name": "add"},
                 "inbound_nodes": [[["inp", 0, 0, {}], ["a", 0, 0, {}]]]},
                {"class_name": "Softmax", "name": "sm", "config": {"name": "sm"},
                 "inbound_nodes": [[["add", 0, 0, {}]]]},
            ],
            "input_layers": [["inp", 0, 0]],
            "output_layers": [["sm", 0, 0]],
        },
    }
    net = build_network({"model_config": topology}, {
        "a/kernel": np.eye(2, dtype=np.float32),
        "a/bias": np.zeros(2, dtype=np.float32),
    })
    out = net(torch.tensor([[0.0, 1.0]]))
    expected = np.exp([0.0, 2.0]) / np.exp([0.0, 2.0]).sum()
    np.testing.assert_allclose(out.numpy()[0], expected, rtol=1e-6)
    assert net.input_size == DEFAULT_INPUT_SIZE


def test_unsupported_layer_is_inference_error():
    with pytest.raises(InferenceError):
        build_network(_sequential(_input(), {"class_name": "LSTM", "config": {"name": "l"}}), {})


def test_missing_weight_is_inference_error():
    with pytest.raises(InferenceError):
        build_network(_sequential({"class_name": "Dense", "config": {"name": "d", "units": 2}}), {})
