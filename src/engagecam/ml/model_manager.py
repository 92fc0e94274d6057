"""Model manager: resolve, download, load and swap classifier bundles.

A bundle can come from the configured pretrained source (a local directory
or a HuggingFace repo) or from files uploaded by the user. Loading a bundle
replaces the active classifier and starts a fresh tally for its labels.
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode
from pydantic import ValidationError

from engagecam.ml.image_classifier import ModelMetadata, TeachableImageClassifier
from engagecam.tally import TallyBoard

if TYPE_CHECKING:
    from collections.abc import Sequence

    from engagecam.config import Settings

logger = logging.getLogger(__name__)

MODEL_FILENAME = "model.onnx"
METADATA_FILENAME = "metadata.json"
HF_SCHEME = "hf://"


class ModelLoadError(RuntimeError):
    """A model bundle could not be read or turned into a session."""


class NoModelLoadedError(RuntimeError):
    """An operation needed a model before one was loaded."""


# ---------------------------------------------------------------------------
# Model sources
# ---------------------------------------------------------------------------


class SourceKind(StrEnum):
    LOCAL = "local"
    HUGGINGFACE = "huggingface"
    UPLOAD = "upload"


@dataclass(frozen=True)
class ModelSource:
    """Where a bundle was loaded from."""

    kind: SourceKind
    location: str
    subfolder: str | None = None

    @classmethod
    def parse(cls, url: str) -> ModelSource:
        """Parse ``hf://<owner>/<repo>[/<subfolder>]`` or a local directory path."""
        if url.startswith(HF_SCHEME):
            parts = [part for part in url[len(HF_SCHEME) :].split("/") if part]
            if len(parts) < 2:
                raise ValueError(f"Expected hf://<owner>/<repo>, got {url!r}")
            subfolder = "/".join(parts[2:]) or None
            return cls(kind=SourceKind.HUGGINGFACE, location="/".join(parts[:2]), subfolder=subfolder)
        return cls(kind=SourceKind.LOCAL, location=url)

    def __str__(self) -> str:
        if self.kind is SourceKind.HUGGINGFACE:
            suffix = f"/{self.subfolder}" if self.subfolder else ""
            return f"{HF_SCHEME}{self.location}{suffix}"
        return self.location


@dataclass(frozen=True)
class UploadedFile:
    """Name and raw contents of a user-supplied bundle file."""

    filename: str
    content: bytes


@dataclass
class LoadedModel:
    """The active classifier together with the tally kept for its labels."""

    classifier: TeachableImageClassifier
    tally: TallyBoard
    source: ModelSource
    loaded_at: float = field(default_factory=time.time)
    upload_dir: Path | None = None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Loads classifier bundles into ONNX Runtime and tracks the active one."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._active: LoadedModel | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def active(self) -> LoadedModel | None:
        with self._lock:
            return self._active

    def require_active(self) -> LoadedModel:
        active = self.active
        if active is None:
            raise NoModelLoadedError("No model loaded")
        return active

    def load_pretrained(self, url: str | None = None) -> LoadedModel:
        """Load the bundle at ``url`` (default: the configured pretrained source)."""
        url = url or self._settings.pretrained_url
        try:
            source = ModelSource.parse(url)
            model_path, metadata_path = self._resolve(source)
            return self._load(model_path, metadata_path, source)
        except ModelLoadError:
            raise
        except Exception as exc:
            logger.exception("Failed to load the model from %s", url)
            raise ModelLoadError(f"Failed to load the model from {url}: {exc}") from exc

    def load_from_files(
        self,
        model_file: UploadedFile | None,
        metadata_file: UploadedFile | None,
        weight_files: Sequence[UploadedFile] = (),
    ) -> LoadedModel:
        """Store uploaded bundle files side by side and load them.

        Weight files keep their names so external-data references in the
        graph resolve relative to the model file.
        """
        if model_file is None or metadata_file is None:
            raise ValueError("Please select both the model file and the metadata file.")
        _check_upload_names(model_file, metadata_file, weight_files)

        upload_dir = self._models_dir / "uploads" / uuid.uuid4().hex
        source = ModelSource(kind=SourceKind.UPLOAD, location=model_file.filename or MODEL_FILENAME)
        try:
            upload_dir.mkdir(parents=True, exist_ok=True)
            model_path = _write_upload(upload_dir, model_file, MODEL_FILENAME)
            metadata_path = _write_upload(upload_dir, metadata_file, METADATA_FILENAME)
            for weights in weight_files:
                _write_upload(upload_dir, weights, None)
            logger.info(
                "Stored upload in %s (%d weight file(s))",
                upload_dir,
                len(weight_files),
            )
            return self._load(model_path, metadata_path, source, upload_dir=upload_dir)
        except ModelLoadError:
            shutil.rmtree(upload_dir, ignore_errors=True)
            raise
        except Exception as exc:
            logger.exception("Failed to load the model from uploaded files")
            shutil.rmtree(upload_dir, ignore_errors=True)
            raise ModelLoadError(f"Failed to load the model: {exc}") from exc

    def shutdown(self) -> None:
        """Drop the active model."""
        with self._lock:
            self._active = None
            logger.info("Active model cleared")

    # -- Internal -----------------------------------------------------------

    def _resolve(self, source: ModelSource) -> tuple[Path, Path]:
        if source.kind is SourceKind.HUGGINGFACE:
            local_dir = self._models_dir / source.location
            paths = [
                Path(
                    hf_hub_download(
                        repo_id=source.location,
                        filename=filename,
                        subfolder=source.subfolder,
                        local_dir=str(local_dir),
                    )
                )
                for filename in (MODEL_FILENAME, METADATA_FILENAME)
            ]
            logger.info("Downloaded %s to %s", source, local_dir)
            return paths[0], paths[1]

        directory = Path(source.location)
        model_path = directory / MODEL_FILENAME
        metadata_path = directory / METADATA_FILENAME
        for path in (model_path, metadata_path):
            if not path.is_file():
                raise FileNotFoundError(f"Missing {path}")
        return model_path, metadata_path

    def _load(
        self,
        model_path: Path,
        metadata_path: Path,
        source: ModelSource,
        upload_dir: Path | None = None,
    ) -> LoadedModel:
        try:
            metadata = ModelMetadata.model_validate_json(metadata_path.read_bytes())
        except ValidationError as exc:
            logger.exception("Invalid metadata in %s", metadata_path)
            raise ModelLoadError(f"Invalid metadata file: {exc}") from exc

        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        classifier = TeachableImageClassifier(session, metadata, name=metadata.model_name or model_path.stem)
        loaded = LoadedModel(
            classifier=classifier,
            tally=TallyBoard(classifier.class_labels, mode=self._settings.tally_mode),
            source=source,
            upload_dir=upload_dir,
        )

        with self._lock:
            previous = self._active
            self._active = loaded
        if previous is not None and previous.upload_dir is not None:
            # Sessions hold their weights in memory once created.
            shutil.rmtree(previous.upload_dir, ignore_errors=True)
        logger.info(
            "Model loaded successfully from %s (%d classes: %s)",
            source,
            classifier.total_classes,
            ", ".join(classifier.class_labels),
        )
        return loaded

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


def _upload_name(upload: UploadedFile, default_name: str | None) -> str | None:
    # Strip any client-supplied directories from the name.
    return Path(upload.filename).name if upload.filename else default_name


def _check_upload_names(
    model_file: UploadedFile,
    metadata_file: UploadedFile,
    weight_files: Sequence[UploadedFile],
) -> None:
    names = [
        _upload_name(model_file, MODEL_FILENAME),
        _upload_name(metadata_file, METADATA_FILENAME),
        *(_upload_name(w, None) for w in weight_files),
    ]
    seen: set[str] = set()
    for name in names:
        if not name:
            raise ValueError("Uploaded file has no name")
        if name in seen:
            raise ValueError(f"Duplicate uploaded file name: {name}")
        seen.add(name)


def _write_upload(directory: Path, upload: UploadedFile, default_name: str | None) -> Path:
    name = _upload_name(upload, default_name)
    if not name:
        raise ValueError("Uploaded file has no name")
    path = directory / name
    path.write_bytes(upload.content)
    return path
