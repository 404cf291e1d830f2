"""
Torch forward pass for a Keras-style layers topology.

The TF.js converter exports the Keras model config verbatim, so the topology
is walked layer by layer and each layer is mapped onto torch.nn.functional.
Activations stay channels-last (NHWC) between layers; convolutions and pools
permute to NCHW only around the torch call.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn.functional as F

from .errors import InferenceError

logger = logging.getLogger(__name__)

DEFAULT_INPUT_SIZE = (224, 224)

LayerFn = Callable[[List[torch.Tensor]], torch.Tensor]

MODEL_CLASSES = ("Sequential", "Functional", "Model")


def _activation(name: Optional[str]) -> Callable[[torch.Tensor], torch.Tensor]:
    if isinstance(name, dict):
        name = (name.get("config") or {}).get("name") or name.get("class_name")
    name = (name or "linear").lower()
    if name == "linear":
        return lambda x: x
    if name == "relu":
        return F.relu
    if name == "relu6":
        return F.relu6
    if name == "sigmoid":
        return torch.sigmoid
    if name == "tanh":
        return torch.tanh
    if name == "softmax":
        return lambda x: torch.softmax(x, dim=-1)
    if name in ("swish", "silu"):
        return F.silu
    if name == "hard_sigmoid":
        return lambda x: torch.clamp(0.2 * x + 0.5, 0.0, 1.0)
    if name == "hard_swish":
        return F.hardswish
    if name == "elu":
        return F.elu
    if name == "selu":
        return F.selu
    if name == "softplus":
        return F.softplus
    if name == "gelu":
        return F.gelu
    raise InferenceError(f"unsupported activation {name!r}")


def _pair(value: Any, default: int = 1) -> Tuple[int, int]:
    if value is None:
        return (default, default)
    if isinstance(value, int):
        return (value, value)
    return (int(value[0]), int(value[1]))


def _same_padding(size: int, kernel: int, stride: int, dilation: int = 1) -> Tuple[int, int]:
    # TF pads asymmetrically, extra pixel goes after.
    effective = (kernel - 1) * dilation + 1
    out = math.ceil(size / stride)
    total = max((out - 1) * stride + effective - size, 0)
    return total // 2, total - total // 2


def _pad_nchw(x: torch.Tensor, kernel: Tuple[int, int], stride: Tuple[int, int],
              dilation: Tuple[int, int], padding: str, value: float = 0.0) -> torch.Tensor:
    if padding != "same":
        return x
    top, bottom = _same_padding(x.shape[2], kernel[0], stride[0], dilation[0])
    left, right = _same_padding(x.shape[3], kernel[1], stride[1], dilation[1])
    if top or bottom or left or right:
        x = F.pad(x, (left, right, top, bottom), value=value)
    return x


def _to_nchw(x: torch.Tensor) -> torch.Tensor:
    return x.permute(0, 3, 1, 2)


def _to_nhwc(x: torch.Tensor) -> torch.Tensor:
    return x.permute(0, 2, 3, 1).contiguous()


class _Weights:
    """Per-layer view over the decoded weight dict."""

    def __init__(self, arrays: Dict[str, np.ndarray]):
        self._by_layer: Dict[str, Dict[str, torch.Tensor]] = {}
        for full_name, arr in arrays.items():
            parts = full_name.split("/")
            if len(parts) < 2:
                continue
            param = parts[-1].split(":")[0]
            layer = parts[-2]
            tensor = torch.from_numpy(np.array(arr, dtype=np.float32, copy=True))
            self._by_layer.setdefault(layer, {})[param] = tensor

    def get(self, layer: str, param: str, required: bool = True) -> Optional[torch.Tensor]:
        found = self._by_layer.get(layer, {}).get(param)
        if found is None and required:
            raise InferenceError(f"missing weight {layer}/{param}")
        return found


def _conv2d(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    kernel = w.get(name, "kernel")
    weight = kernel.permute(3, 2, 0, 1).contiguous()
    bias = w.get(name, "bias", required=cfg.get("use_bias", True))
    stride = _pair(cfg.get("strides"))
    dilation = _pair(cfg.get("dilation_rate"))
    groups = int(cfg.get("groups", 1) or 1)
    padding = cfg.get("padding", "valid")
    act = _activation(cfg.get("activation"))
    ksize = (weight.shape[2], weight.shape[3])

    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        x = _pad_nchw(_to_nchw(xs[0]), ksize, stride, dilation, padding)
        y = F.conv2d(x, weight, bias, stride=stride, dilation=dilation, groups=groups)
        return act(_to_nhwc(y))
    return run


def _depthwise_weight(kernel: torch.Tensor) -> torch.Tensor:
    kh, kw, cin, mult = kernel.shape
    return kernel.reshape(kh, kw, cin * mult).permute(2, 0, 1).unsqueeze(1).contiguous()


def _depthwise2d(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    kernel = w.get(name, "depthwise_kernel")
    cin = kernel.shape[2]
    weight = _depthwise_weight(kernel)
    bias = w.get(name, "bias", required=cfg.get("use_bias", True))
    stride = _pair(cfg.get("strides"))
    dilation = _pair(cfg.get("dilation_rate"))
    padding = cfg.get("padding", "valid")
    act = _activation(cfg.get("activation"))
    ksize = (kernel.shape[0], kernel.shape[1])

    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        x = _pad_nchw(_to_nchw(xs[0]), ksize, stride, dilation, padding)
        y = F.conv2d(x, weight, bias, stride=stride, dilation=dilation, groups=cin)
        return act(_to_nhwc(y))
    return run


def _separable2d(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    depthwise = w.get(name, "depthwise_kernel")
    pointwise = w.get(name, "pointwise_kernel")
    cin = depthwise.shape[2]
    dw = _depthwise_weight(depthwise)
    pw = pointwise.permute(3, 2, 0, 1).contiguous()
    bias = w.get(name, "bias", required=cfg.get("use_bias", True))
    stride = _pair(cfg.get("strides"))
    dilation = _pair(cfg.get("dilation_rate"))
    padding = cfg.get("padding", "valid")
    act = _activation(cfg.get("activation"))
    ksize = (depthwise.shape[0], depthwise.shape[1])

    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        x = _pad_nchw(_to_nchw(xs[0]), ksize, stride, dilation, padding)
        y = F.conv2d(x, dw, None, stride=stride, dilation=dilation, groups=cin)
        y = F.conv2d(y, pw, bias)
        return act(_to_nhwc(y))
    return run


def _dense(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    kernel = w.get(name, "kernel")
    bias = w.get(name, "bias", required=cfg.get("use_bias", True))
    act = _activation(cfg.get("activation"))

    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        y = torch.matmul(xs[0], kernel)
        if bias is not None:
            y = y + bias
        return act(y)
    return run


def _batch_norm(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    axis = cfg.get("axis", -1)
    if isinstance(axis, (list, tuple)):
        axis = axis[0] if len(axis) == 1 else None
    if axis not in (-1, 3):
        raise InferenceError(f"BatchNormalization {name} on axis {axis!r} is not supported")
    mean = w.get(name, "moving_mean")
    var = w.get(name, "moving_variance")
    gamma = w.get(name, "gamma", required=cfg.get("scale", True))
    beta = w.get(name, "beta", required=cfg.get("center", True))
    eps = float(cfg.get("epsilon", 1e-3))
    scale = torch.rsqrt(var + eps)
    if gamma is not None:
        scale = scale * gamma
    shift = -mean * scale
    if beta is not None:
        shift = shift + beta

    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        return xs[0] * scale + shift
    return run


def _relu_layer(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    max_value = cfg.get("max_value")
    slope = float(cfg.get("negative_slope", 0.0) or 0.0)
    threshold = float(cfg.get("threshold", 0.0) or 0.0)

    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        x = xs[0]
        y = torch.where(x >= threshold, x, slope * (x - threshold))
        if max_value is not None:
            y = torch.clamp(y, max=float(max_value))
        return y
    return run


def _zero_padding(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    pad = cfg.get("padding", 1)
    if isinstance(pad, int):
        (top, bottom), (left, right) = (pad, pad), (pad, pad)
    elif isinstance(pad[0], int):
        (top, bottom), (left, right) = (pad[0], pad[0]), (pad[1], pad[1])
    else:
        (top, bottom), (left, right) = pad[0], pad[1]

    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        return F.pad(xs[0], (0, 0, left, right, top, bottom))
    return run


def _pool2d(kind: str) -> Callable[[str, Dict[str, Any], _Weights], LayerFn]:
    def build(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
        size = _pair(cfg.get("pool_size"), 2)
        stride = _pair(cfg.get("strides") or size)
        padding = cfg.get("padding", "valid")

        def run(xs: List[torch.Tensor]) -> torch.Tensor:
            x = _to_nchw(xs[0])
            if kind == "max":
                x = _pad_nchw(x, size, stride, (1, 1), padding, value=float("-inf"))
                return _to_nhwc(F.max_pool2d(x, size, stride))
            # TF excludes padded cells from the average.
            ones = torch.ones_like(x[:, :1])
            x = _pad_nchw(x, size, stride, (1, 1), padding)
            ones = _pad_nchw(ones, size, stride, (1, 1), padding)
            total = F.avg_pool2d(x, size, stride)
            count = F.avg_pool2d(ones, size, stride)
            return _to_nhwc(total / count)
        return run
    return build


def _global_pool(kind: str) -> Callable[[str, Dict[str, Any], _Weights], LayerFn]:
    def build(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
        keepdims = bool(cfg.get("keepdims", False))

        def run(xs: List[torch.Tensor]) -> torch.Tensor:
            if kind == "max":
                return torch.amax(xs[0], dim=(1, 2), keepdim=keepdims)
            return torch.mean(xs[0], dim=(1, 2), keepdim=keepdims)
        return run
    return build


def _flatten(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    return lambda xs: xs[0].reshape(xs[0].shape[0], -1)


def _reshape(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    target = tuple(int(d) for d in cfg.get("target_shape", []))
    return lambda xs: xs[0].reshape((xs[0].shape[0],) + target)


def _identity(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    return lambda xs: xs[0]


def _activation_layer(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    act = _activation(cfg.get("activation"))
    return lambda xs: act(xs[0])


def _softmax_layer(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    axis = cfg.get("axis", -1)
    if isinstance(axis, (list, tuple)):
        axis = axis[0]
    return lambda xs: torch.softmax(xs[0], dim=int(axis))


def _leaky_relu(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    slope = float(cfg.get("alpha", cfg.get("negative_slope", 0.3)))
    return lambda xs: F.leaky_relu(xs[0], slope)


def _rescaling(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    scale = float(cfg.get("scale", 1.0))
    offset = float(cfg.get("offset", 0.0))
    return lambda xs: xs[0] * scale + offset


def _add(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        out = xs[0]
        for x in xs[1:]:
            out = out + x
        return out
    return run


def _multiply(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    def run(xs: List[torch.Tensor]) -> torch.Tensor:
        out = xs[0]
        for x in xs[1:]:
            out = out * x
        return out
    return run


def _concatenate(name: str, cfg: Dict[str, Any], w: _Weights) -> LayerFn:
    axis = int(cfg.get("axis", -1))
    return lambda xs: torch.cat(xs, dim=axis)


LAYER_BUILDERS: Dict[str, Callable[[str, Dict[str, Any], _Weights], LayerFn]] = {
    "InputLayer": _identity,
    "Conv2D": _conv2d,
    "DepthwiseConv2D": _depthwise2d,
    "SeparableConv2D": _separable2d,
    "Dense": _dense,
    "BatchNormalization": _batch_norm,
    "Activation": _activation_layer,
    "ReLU": _relu_layer,
    "LeakyReLU": _leaky_relu,
    "Softmax": _softmax_layer,
    "ZeroPadding2D": _zero_padding,
    "MaxPooling2D": _pool2d("max"),
    "AveragePooling2D": _pool2d("avg"),
    "GlobalAveragePooling2D": _global_pool("avg"),
    "GlobalMaxPooling2D": _global_pool("max"),
    "Flatten": _flatten,
    "Reshape": _reshape,
    "Dropout": _identity,
    "SpatialDropout2D": _identity,
    "GaussianNoise": _identity,
    "Rescaling": _rescaling,
    "Add": _add,
    "Multiply": _multiply,
    "Concatenate": _concatenate,
}


@dataclass
class _Node:
    name: str
    fn: LayerFn
    inbound: Tuple[str, ...]


def _history_names(obj: Any) -> List[str]:
    """Collect producer layer names from Keras 3 style node args."""
    names: List[str] = []
    if isinstance(obj, dict):
        hist = (obj.get("config") or {}).get("keras_history")
        if hist:
            names.append(hist[0])
        else:
            for v in obj.values():
                names.extend(_history_names(v))
    elif isinstance(obj, (list, tuple)):
        for v in obj:
            names.extend(_history_names(v))
    return names


def _inbound_names(layer: Dict[str, Any]) -> Tuple[str, ...]:
    nodes = layer.get("inbound_nodes") or []
    if not nodes:
        return ()
    if len(nodes) > 1:
        raise InferenceError(f"layer {layer.get('name')} is shared across calls; not supported")
    node = nodes[0]
    if isinstance(node, dict):
        return tuple(_history_names(node.get("args", [])))
    # Keras 2: [[name, node_index, tensor_index, kwargs], ...]
    return tuple(entry[0] for entry in node)


def _batch_shape(cfg: Dict[str, Any]) -> Optional[Sequence[Optional[int]]]:
    return cfg.get("batch_input_shape") or cfg.get("batch_shape")


class Network:
    """Callable graph of layer functions with a single input and output."""

    def __init__(self, name: str, nodes: List[_Node], input_name: str, output_name: str,
                 batch_shape: Optional[Sequence[Optional[int]]]):
        self.name = name
        self.nodes = nodes
        self.input_name = input_name
        self.output_name = output_name
        self.batch_shape = batch_shape

    @property
    def input_size(self) -> Tuple[int, int]:
        shape = self.batch_shape
        if shape and len(shape) == 4 and shape[1] and shape[2]:
            return int(shape[1]), int(shape[2])
        return DEFAULT_INPUT_SIZE

    def __call__(self, x: torch.Tensor) -> torch.Tensor:
        values: Dict[str, torch.Tensor] = {self.input_name: x}
        for node in self.nodes:
            if node.name in values:
                continue
            try:
                args = [values[n] for n in node.inbound]
            except KeyError as e:
                raise InferenceError(f"layer {node.name} consumes unknown tensor {e}")
            try:
                values[node.name] = node.fn(args)
            except RuntimeError as e:
                raise InferenceError(f"layer {node.name} failed: {e}")
        return values[self.output_name]


def _unwrap_topology(topology: Dict[str, Any]) -> Dict[str, Any]:
    if "model_config" in topology:
        return topology["model_config"]
    return topology


def _build_layer(layer: Dict[str, Any], weights: _Weights) -> LayerFn:
    cls = layer.get("class_name")
    cfg = layer.get("config") or {}
    name = cfg.get("name") or layer.get("name")
    if cls in MODEL_CLASSES:
        sub = _build(layer, weights)
        return lambda xs: sub(xs[0])
    builder = LAYER_BUILDERS.get(cls)
    if builder is None:
        raise InferenceError(f"unsupported layer type {cls!r} ({name})")
    return builder(name, cfg, weights)


def _build(model: Dict[str, Any], weights: _Weights) -> Network:
    cls = model.get("class_name")
    cfg = model.get("config")
    if cls not in MODEL_CLASSES:
        raise InferenceError(f"unsupported model class {cls!r}")

    if cls == "Sequential":
        layers = cfg if isinstance(cfg, list) else (cfg or {}).get("layers", [])
        name = "sequential" if isinstance(cfg, list) else (cfg or {}).get("name", "sequential")
        if not layers:
            raise InferenceError("Sequential topology has no layers")
        batch_shape = None
        nodes: List[_Node] = []
        prev = "__input__"
        for layer in layers:
            lcfg = layer.get("config") or {}
            if batch_shape is None:
                batch_shape = _batch_shape(lcfg)
            lname = lcfg.get("name") or f"layer_{len(nodes)}"
            nodes.append(_Node(lname, _build_layer(layer, weights), (prev,)))
            prev = lname
        return Network(name, nodes, "__input__", prev, batch_shape)

    layers = cfg.get("layers", [])
    inputs = cfg.get("input_layers") or []
    outputs = cfg.get("output_layers") or []
    # Keras may store a single [name, 0, 0] instead of a list of them.
    if inputs and isinstance(inputs[0], str):
        inputs = [inputs]
    if outputs and isinstance(outputs[0], str):
        outputs = [outputs]
    if len(inputs) != 1 or len(outputs) != 1:
        raise InferenceError("only single-input, single-output models are supported")
    input_name, output_name = inputs[0][0], outputs[0][0]

    batch_shape = None
    nodes = []
    for layer in layers:
        lname = layer.get("name") or (layer.get("config") or {}).get("name")
        if lname == input_name:
            batch_shape = _batch_shape(layer.get("config") or {})
            continue
        nodes.append(_Node(lname, _build_layer(layer, weights), _inbound_names(layer)))
    return Network(cfg.get("name", "model"), nodes, input_name, output_name, batch_shape)


def build_network(topology: Dict[str, Any], arrays: Dict[str, np.ndarray]) -> Network:
    """Build the forward pass for an artifact's topology and decoded weights."""
    if not topology:
        raise InferenceError("artifact carries no model topology")
    try:
        network = _build(_unwrap_topology(topology), _Weights(arrays))
    except (RuntimeError, ValueError, TypeError, KeyError, IndexError) as e:
        raise InferenceError(f"could not build network: {e}")
    logger.debug("Built network %s with %d layers, input %s", network.name, len(network.nodes), network.input_size)
    return network
