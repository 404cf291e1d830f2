"""
Model Artifact Loader
Reassembles a TF.js layers-model export (model.json + binary weight shards)
into a single in-memory artifact and keeps it as a process-wide model store.

Layout of a model directory:
    model.json          topology + weightsManifest
    group1-shard1of2.bin, ...
    class_indices.json  {"0": "Apple___Apple_scab", ...} or a JSON array
"""
import copy
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from ..config import get_settings
from .errors import ArtifactCorrupt, ArtifactNotFound, DiagnosisError
from . import graph

logger = logging.getLogger(__name__)

MANIFEST_FILE = "model.json"
CLASS_INDEX_FILE = "class_indices.json"

# Bytes per element for every dtype a shard may hold.
DTYPE_WIDTHS = {
    "float32": 4,
    "int32": 4,
    "bool": 1,
    "float16": 2,
    "uint8": 1,
    "uint16": 2,
}


@dataclass(frozen=True)
class WeightSpec:
    name: str
    shape: Tuple[int, ...]
    dtype: str
    quantization: Optional[Dict[str, Any]] = None

    @property
    def size(self) -> int:
        n = 1
        for dim in self.shape:
            n *= dim
        return n

    @property
    def storage_dtype(self) -> str:
        if self.quantization:
            return self.quantization.get("dtype", self.dtype)
        return self.dtype

    @property
    def byte_length(self) -> int:
        return self.size * DTYPE_WIDTHS[self.storage_dtype]

    @classmethod
    def from_manifest(cls, raw: Dict[str, Any]) -> "WeightSpec":
        try:
            spec = cls(
                name=str(raw["name"]),
                shape=tuple(int(d) for d in raw.get("shape", [])),
                dtype=str(raw.get("dtype", "float32")),
                quantization=raw.get("quantization"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ArtifactCorrupt(f"invalid weight spec {raw!r}: {e}")
        if spec.storage_dtype not in DTYPE_WIDTHS:
            raise ArtifactCorrupt(f"unsupported dtype {spec.storage_dtype!r} for weight {spec.name}")
        return spec


@dataclass(frozen=True)
class ModelArtifact:
    topology: Dict[str, Any]
    weight_specs: Tuple[WeightSpec, ...]
    weight_data: bytes
    format: Optional[str] = None
    generated_by: Optional[str] = None
    converted_by: Optional[str] = None

    @property
    def declared_bytes(self) -> int:
        return sum(s.byte_length for s in self.weight_specs)


def _read_manifest(model_dir: str) -> Dict[str, Any]:
    path = os.path.join(model_dir, MANIFEST_FILE)
    if not os.path.isfile(path):
        raise ArtifactNotFound(f"manifest not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            manifest = json.load(f)
    except (OSError, ValueError) as e:
        raise ArtifactCorrupt(f"unreadable manifest {path}: {e}")
    if not isinstance(manifest, dict) or not isinstance(manifest.get("weightsManifest"), list):
        raise ArtifactCorrupt(f"{path} has no weightsManifest")
    return manifest


def read_artifact(model_dir: str) -> ModelArtifact:
    """Parse the manifest and copy every shard into one contiguous buffer.

    Specs and shards keep their declared order; offsets into the buffer are
    derived from that order, so reordering would misalign every later weight.
    """
    manifest = _read_manifest(model_dir)

    specs: List[WeightSpec] = []
    shard_paths: List[str] = []
    for group in manifest["weightsManifest"]:
        if not isinstance(group, dict):
            raise ArtifactCorrupt("weightsManifest group is not an object")
        for raw in group.get("weights", []):
            specs.append(WeightSpec.from_manifest(raw))
        for rel in group.get("paths", []):
            shard_paths.append(os.path.join(model_dir, rel))

    # Precompute every shard's offset before copying anything.
    offsets: List[Tuple[str, int, int]] = []
    total = 0
    for path in shard_paths:
        if not os.path.isfile(path):
            raise ArtifactNotFound(f"weight shard not found: {path}")
        length = os.path.getsize(path)
        offsets.append((path, total, length))
        total += length

    declared = sum(s.byte_length for s in specs)
    if total != declared:
        raise ArtifactCorrupt(
            f"shard bytes ({total}) do not match declared weight bytes ({declared})"
        )

    arena = bytearray(declared)
    copied = 0
    for path, offset, length in offsets:
        with open(path, "rb") as f:
            chunk = f.read()
        if len(chunk) != length:
            raise ArtifactCorrupt(f"shard {path} changed size while loading")
        arena[offset:offset + length] = chunk
        copied += len(chunk)

    if copied != declared:
        raise ArtifactCorrupt(f"copied {copied} bytes, expected {declared}")

    return ModelArtifact(
        topology=manifest.get("modelTopology") or {},
        weight_specs=tuple(specs),
        weight_data=bytes(arena),
        format=manifest.get("format"),
        generated_by=manifest.get("generatedBy"),
        converted_by=manifest.get("convertedBy"),
    )


def _decode_one(spec: WeightSpec, raw: bytes) -> np.ndarray:
    q = spec.quantization
    if q:
        qdtype = q.get("dtype")
        if qdtype == "float16":
            values = np.frombuffer(raw, dtype="<f2").astype(np.float32)
        elif qdtype in ("uint8", "uint16"):
            ints = np.frombuffer(raw, dtype="<u1" if qdtype == "uint8" else "<u2")
            values = ints.astype(np.float32) * float(q.get("scale", 1.0)) + float(q.get("min", 0.0))
        else:
            raise ArtifactCorrupt(f"unsupported quantization {qdtype!r} for {spec.name}")
        if spec.dtype == "int32":
            values = np.round(values).astype(np.int32)
    elif spec.dtype == "float32":
        values = np.frombuffer(raw, dtype="<f4")
    elif spec.dtype == "int32":
        values = np.frombuffer(raw, dtype="<i4")
    elif spec.dtype == "bool":
        values = np.frombuffer(raw, dtype=np.uint8).astype(bool)
    else:
        raise ArtifactCorrupt(f"unsupported dtype {spec.dtype!r} for {spec.name}")
    return values.reshape(spec.shape)


def decode_weights(artifact: ModelArtifact) -> Dict[str, np.ndarray]:
    """Slice the weight buffer into named arrays, walking specs in order."""
    weights: Dict[str, np.ndarray] = {}
    offset = 0
    buf = artifact.weight_data
    for spec in artifact.weight_specs:
        end = offset + spec.byte_length
        if end > len(buf):
            raise ArtifactCorrupt(f"weight {spec.name} runs past the end of the buffer")
        weights[spec.name] = _decode_one(spec, buf[offset:end])
        offset = end
    return weights


def load_class_labels(model_dir: str) -> Tuple[str, ...]:
    path = os.path.join(model_dir, CLASS_INDEX_FILE)
    if not os.path.isfile(path):
        raise ArtifactNotFound(f"class index file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        raise ArtifactCorrupt(f"unreadable class index {path}: {e}")

    if isinstance(raw, list):
        labels = [str(x) for x in raw]
    elif isinstance(raw, dict):
        try:
            indexed = {int(k): str(v) for k, v in raw.items()}
        except ValueError as e:
            raise ArtifactCorrupt(f"non-integer class index in {path}: {e}")
        if sorted(indexed) != list(range(len(indexed))):
            raise ArtifactCorrupt(f"class indices in {path} are not contiguous from 0")
        labels = [indexed[i] for i in range(len(indexed))]
    else:
        raise ArtifactCorrupt(f"{path} must be a JSON object or array")
    if not labels:
        raise ArtifactCorrupt(f"{path} lists no classes")
    return tuple(labels)


@dataclass(frozen=True)
class LoadedModel:
    artifact: ModelArtifact
    labels: Tuple[str, ...]
    network: "graph.Network"

    @property
    def input_size(self) -> Tuple[int, int]:
        return self.network.input_size


@dataclass
class ModelStore:
    """Lazily loads one model directory and hands out the cached result.

    The lock only guards the loading transition; once loaded the model is
    read-only and inference needs no locking. A failed load is remembered
    until invalidate() so a broken artifact is not re-read on every request.
    """

    model_dir: str
    reader: Callable[[str], ModelArtifact] = read_artifact
    _loaded: Optional[LoadedModel] = field(default=None, init=False, repr=False)
    _error: Optional[DiagnosisError] = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def is_loaded(self) -> bool:
        return self._loaded is not None

    def load(self) -> LoadedModel:
        loaded = self._loaded
        if loaded is not None:
            return loaded
        with self._lock:
            if self._loaded is not None:
                return self._loaded
            if self._error is not None:
                # The cached error never carries a traceback; each caller gets its own copy.
                raise copy.copy(self._error)
            start = time.time()
            logger.info("Loading plant disease model from %s", self.model_dir)
            try:
                artifact = self.reader(self.model_dir)
                labels = load_class_labels(self.model_dir)
                network = graph.build_network(artifact.topology, decode_weights(artifact))
            except DiagnosisError as e:
                logger.error("Failed to load plant disease model: %s", e)
                self._error = copy.copy(e)
                raise
            except Exception as e:
                logger.exception("Failed to load plant disease model")
                error = ArtifactCorrupt(f"could not build model from {self.model_dir}: {e}")
                self._error = copy.copy(error)
                raise error from e
            self._loaded = LoadedModel(artifact=artifact, labels=labels, network=network)
            logger.info(
                "Plant disease model loaded in %.0fms (%d classes, %d weights, %d bytes)",
                (time.time() - start) * 1000, len(labels), len(artifact.weight_specs), len(artifact.weight_data),
            )
            return self._loaded

    def invalidate(self) -> None:
        with self._lock:
            self._loaded = None
            self._error = None


_default_store: Optional[ModelStore] = None
_default_store_lock = threading.Lock()


def default_store() -> ModelStore:
    """Process-wide store for the configured model directory."""
    global _default_store
    with _default_store_lock:
        if _default_store is None:
            _default_store = ModelStore(get_settings().model_dir)
        return _default_store
