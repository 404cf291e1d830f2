import json
import os
from io import BytesIO
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pytest
from PIL import Image

LABELS = ["Tomato___Late_blight", "Apple___healthy", "Corn_(maize)___Common_rust_"]


def write_model_dir(path, layers: Sequence[dict], weights: List[Tuple[str, np.ndarray]],
                    labels: Optional[Sequence[str]] = None, shards: int = 2,
                    class_name: str = "Sequential") -> str:
    """Write a TF.js-style layers model (model.json + N shard files + labels)."""
    os.makedirs(path, exist_ok=True)
    specs = []
    blob = b""
    for name, arr in weights:
        arr = np.asarray(arr)
        dtype = "int32" if arr.dtype.kind == "i" else "float32"
        specs.append({"name": name, "shape": list(arr.shape), "dtype": dtype})
        blob += arr.astype("<i4" if dtype == "int32" else "<f4").tobytes()

    # Split the blob into roughly equal shards; all listed under one group.
    shard_names = []
    step = max(1, -(-len(blob) // shards)) if blob else 1
    for i in range(shards):
        chunk = blob[i * step:(i + 1) * step]
        if not chunk and i > 0:
            break
        fname = f"group1-shard{i + 1}of{shards}.bin"
        with open(os.path.join(path, fname), "wb") as f:
            f.write(chunk)
        shard_names.append(fname)

    manifest = {
        "format": "layers-model",
        "generatedBy": "keras v2.15.0",
        "convertedBy": "TensorFlow.js Converter v4.17.0",
        "modelTopology": {
            "class_name": class_name,
            "config": {"name": "test_model", "layers": list(layers)},
        },
        "weightsManifest": [{"paths": shard_names, "weights": specs}],
    }
    with open(os.path.join(path, "model.json"), "w", encoding="utf-8") as f:
        json.dump(manifest, f)
    with open(os.path.join(path, "class_indices.json"), "w", encoding="utf-8") as f:
        json.dump({str(i): label for i, label in enumerate(labels or LABELS)}, f)
    return str(path)


def small_classifier(path, bias: Sequence[float] = (2.0, 1.0, 0.0), seed: int = 7,
                     labels: Optional[Sequence[str]] = None) -> str:
    """4x4 RGB -> Conv2D(2, 3x3 same, relu) -> GAP -> Dense(n, softmax)."""
    rng = np.random.default_rng(seed)
    n = len(labels or LABELS)
    layers = [
        {"class_name": "InputLayer", "config": {"name": "input_1", "batch_input_shape": [None, 4, 4, 3]}},
        {"class_name": "Conv2D", "config": {
            "name": "conv", "filters": 2, "kernel_size": [3, 3], "strides": [1, 1],
            "padding": "same", "activation": "relu", "use_bias": True,
        }},
        {"class_name": "GlobalAveragePooling2D", "config": {"name": "gap"}},
        {"class_name": "Dropout", "config": {"name": "dropout", "rate": 0.2}},
        {"class_name": "Dense", "config": {"name": "predictions", "units": n, "activation": "softmax"}},
    ]
    weights = [
        ("conv/kernel", rng.normal(size=(3, 3, 3, 2)).astype(np.float32)),
        ("conv/bias", np.zeros(2, dtype=np.float32)),
        ("predictions/kernel", (rng.normal(size=(2, n)) * 0.01).astype(np.float32)),
        ("predictions/bias", np.asarray(bias, dtype=np.float32)),
    ]
    return write_model_dir(path, layers, weights, labels=labels)


def image_bytes(color=(200, 30, 30), size=(10, 7), mode="RGB", fmt="PNG") -> bytes:
    if mode == "RGBA" and len(color) == 3:
        color = tuple(color) + (128,)
    if mode == "L" and not isinstance(color, int):
        color = color[0]
    img = Image.new(mode, size, color)
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def model_dir(tmp_path) -> str:
    return small_classifier(tmp_path / "plant-disease")


@pytest.fixture
def leaf_png() -> bytes:
    return image_bytes()


class StubTier:
    def __init__(self, name: str, result=None, error: Optional[BaseException] = None):
        self.name = name
        self.result = result
        self.error = error
        self.calls = 0

    def attempt(self, request):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def stub_tier():
    return StubTier
