"""Tests for the ONNX model manager."""

from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from maskprep.config import Settings
from maskprep.ml.model_manager import MODEL_REGISTRY, ModelTask, OnnxModelManager, get_spec

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(tmp_path: Path, **overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": str(tmp_path / "models"),
        "model_repo_id": "maskprep/test-models",
        "model_ttl": 300,
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_detector_entry(self) -> None:
        spec = MODEL_REGISTRY["mask_rcnn_coco"]
        assert spec.task == ModelTask.DETECTION
        assert spec.image_mode == "centered"
        assert spec.input_size is None

    def test_classifier_entries_carry_input_geometry(self) -> None:
        assert MODEL_REGISTRY["inception_v3"].input_size == 299
        assert MODEL_REGISTRY["inception_v3"].image_mode == "centered"
        assert MODEL_REGISTRY["resnet50_caffe"].input_size == 224
        assert MODEL_REGISTRY["resnet50_caffe"].image_mode == "mean_subtracted"

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            get_spec("nonexistent_model")

    def test_task_values_are_strings(self) -> None:
        assert MODEL_REGISTRY["inception_v3"].task == "classification"


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock, tmp_path: Path) -> None:
        models_dir = tmp_path / "models"
        mock_download.return_value = str(models_dir / "mask_rcnn_coco.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        path = mgr.ensure_downloaded("mask_rcnn_coco")

        mock_download.assert_called_once_with(
            repo_id="maskprep/test-models",
            filename="mask_rcnn_coco.onnx",
            local_dir=str(models_dir),
        )
        assert path == models_dir / "mask_rcnn_coco.onnx"

    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_uses_local_file(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        model_file = tmp_path / "models" / "mask_rcnn_coco.onnx"
        model_file.touch()

        path = mgr.ensure_downloaded("mask_rcnn_coco")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_cached_path(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "elsewhere.onnx"
        model_file.touch()
        mgr = OnnxModelManager(_make_settings(tmp_path))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["mask_rcnn_coco"] = model_file

        assert mgr.ensure_downloaded("mask_rcnn_coco") == model_file
        mock_download.assert_not_called()

    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_ensure_labels(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "models" / "imagenet_labels.txt")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        path = mgr.ensure_labels("inception_v3")

        assert path == tmp_path / "models" / "imagenet_labels.txt"
        assert mock_download.call_args.kwargs["filename"] == "imagenet_labels.txt"

    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_ensure_labels_none_for_detector(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        assert mgr.ensure_labels("mask_rcnn_coco") is None
        mock_download.assert_not_called()

    @patch("maskprep.ml.model_manager.InferenceSession")
    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "models" / "mask_rcnn_coco.onnx")
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session
        mgr = OnnxModelManager(_make_settings(tmp_path))

        session1 = mgr.get_session("mask_rcnn_coco")
        session2 = mgr.get_session("mask_rcnn_coco")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()

    @patch("maskprep.ml.model_manager.InferenceSession")
    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "models" / "inception_v3.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))

        assert mgr.get_loaded_models() == []
        mgr.get_session("inception_v3")
        assert mgr.get_loaded_models() == ["inception_v3"]

    @patch("maskprep.ml.model_manager.InferenceSession")
    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_unload_idle_models_removes_expired(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "models" / "mask_rcnn_coco.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=1))
        mgr.get_session("mask_rcnn_coco")

        # Fake the last_used time to be in the past.
        mgr._sessions["mask_rcnn_coco"].last_used = time.monotonic() - 10

        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_unload_idle_skipped_when_ttl_zero(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, model_ttl=0))
        mgr.unload_idle_models()
        assert mgr.get_loaded_models() == []

    def test_provider_building_cpu(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path, device="openvino"))
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    @patch("maskprep.ml.model_manager.InferenceSession")
    @patch("maskprep.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.return_value = str(tmp_path / "models" / "mask_rcnn_coco.onnx")
        mgr = OnnxModelManager(_make_settings(tmp_path))
        mgr.get_session("mask_rcnn_coco")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self, tmp_path: Path) -> None:
        mgr = OnnxModelManager(_make_settings(tmp_path))
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
