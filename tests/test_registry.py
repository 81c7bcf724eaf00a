"""Tests for ClusterRegistry."""

from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest
from conftest import HashEmbed, speech

from speakerid import npy_io
from speakerid.embedding import Embedder
from speakerid.exceptions import (
    SpeakerEmbeddingError,
    StateError,
    StorageError,
    UnknownClusterError,
)
from speakerid.registry import ClusterRegistry
from speakerid.settings import SpeakerIdSettings
from speakerid.wire import decode_cluster


def make_registry(directory: Path, embed=None) -> ClusterRegistry:
    s = SpeakerIdSettings()
    return ClusterRegistry(Embedder(embed or HashEmbed(), s), directory, s)


class TestClusterLifecycle:
    """Tests for init, push and persistence."""

    def test_ids_are_sequential(self, tmp_path: Path) -> None:
        """Test ids start at 1."""
        registry = make_registry(tmp_path)

        assert registry.init_cluster(3) == 1
        assert registry.init_cluster(3) == 2
        assert registry.cluster_ids() == [1, 2]

    def test_push_persists_files(self, tmp_path: Path) -> None:
        """Test every push writes the cluster matrix and mean vector."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(3)

        registry.push_embedding(cid, speech(13))
        registry.push_embedding(cid, speech(13, level=700))

        assert npy_io.read_array(tmp_path / "spk_cluster_1.npy").shape == (2, 16)
        assert npy_io.read_array(tmp_path / "spk_mean_1.npy").shape == (16,)

    def test_fifo_capacity(self, tmp_path: Path) -> None:
        """Test the oldest embedding is evicted at capacity."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(2)

        for level in (500, 600, 700):
            registry.push_embedding(cid, speech(13, level=level))

        assert registry.size(cid) == 2
        # the evicted first buffer no longer matches a row exactly
        assert registry.verify(cid, speech(13, level=500)) < 0.99
        assert registry.verify(cid, speech(13, level=700)) == pytest.approx(1.0, abs=1e-5)

    def test_length_limits_buffer(self, tmp_path: Path) -> None:
        """Test only the first ``length`` samples are used."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(1)
        audio = np.concatenate([speech(13), speech(13, level=300)])

        registry.push_embedding(cid, audio, length=16640)

        assert registry.verify(cid, speech(13)) == pytest.approx(1.0, abs=1e-5)

    def test_resume_from_disk(self, tmp_path: Path) -> None:
        """Test a new registry picks up persisted clusters by id."""
        first = make_registry(tmp_path)
        cid = first.init_cluster(4)
        first.push_embedding(cid, speech(13))

        second = make_registry(tmp_path)
        resumed = second.init_cluster(4)

        assert resumed == cid
        assert second.size(resumed) == 1
        assert second.verify(resumed, speech(13)) == pytest.approx(1.0, abs=1e-5)

    def test_remove_cluster(self, tmp_path: Path) -> None:
        """Test removal forgets the id and optionally deletes files."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(2)
        registry.push_embedding(cid, speech(13))

        assert registry.remove_cluster(cid, delete_files=True) is True
        assert registry.remove_cluster(cid) is False
        assert not (tmp_path / "spk_cluster_1.npy").exists()
        assert registry.verify(cid, speech(13)) == float("-inf")

    def test_failed_save_leaves_cluster_unchanged(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a push whose files cannot be written does not change the cluster."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(1)
        registry.push_embedding(cid, speech(13))

        def failing_save(path: Path, vector: np.ndarray) -> None:
            raise StorageError(f"disk full: {path}")

        monkeypatch.setattr(npy_io, "save_vector_atomic", failing_save)

        with pytest.raises(StorageError):
            registry.push_embedding(cid, speech(13, level=700))
        assert registry.size(cid) == 1
        assert registry.verify(cid, speech(13)) == pytest.approx(1.0, abs=1e-5)


class TestVerify:
    """Tests for ClusterRegistry.verify."""

    def test_unknown_id(self, tmp_path: Path) -> None:
        """Test an unknown id scores -inf."""
        assert make_registry(tmp_path).verify(42, speech(13)) == float("-inf")

    def test_empty_cluster(self, tmp_path: Path) -> None:
        """Test a cluster with no embeddings scores -inf."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(2)

        assert registry.verify(cid, speech(13)) == float("-inf")

    def test_same_audio(self, tmp_path: Path) -> None:
        """Test the pushed buffer verifies at about 1."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(2)
        registry.push_embedding(cid, speech(13))

        assert registry.verify(cid, speech(13).tobytes()) == pytest.approx(1.0, abs=1e-5)

    def test_embedding_failure(self, tmp_path: Path) -> None:
        """Test verify swallows embedding errors while push raises them."""
        embed = MagicMock(side_effect=HashEmbed())
        registry = make_registry(tmp_path, embed)
        cid = registry.init_cluster(2)
        registry.push_embedding(cid, speech(13))
        embed.side_effect = RuntimeError("model crashed")

        assert registry.verify(cid, speech(13)) == float("-inf")
        with pytest.raises(SpeakerEmbeddingError):
            registry.push_embedding(cid, speech(13))
        assert registry.size(cid) == 1

    def test_dimension_mismatch(self, tmp_path: Path) -> None:
        """Test rows of another dimension resumed from disk score -inf."""
        npy_io.save_matrix_atomic(tmp_path / "spk_cluster_1.npy", np.eye(2, 8, dtype=np.float32))
        registry = make_registry(tmp_path, HashEmbed(16))
        cid = registry.init_cluster(3)

        assert registry.size(cid) == 2
        assert registry.verify(cid, speech(13)) == float("-inf")


class TestExport:
    """Tests for get_cluster and error paths."""

    def test_get_cluster(self, tmp_path: Path) -> None:
        """Test the exported blob holds every row."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(3)
        registry.push_embedding(cid, speech(13))
        registry.push_embedding(cid, speech(13, level=700))

        assert decode_cluster(registry.get_cluster(cid)).k == 2
        assert decode_cluster(registry.get_cluster(cid, append_mean=True)).k == 3

    def test_get_empty_cluster(self, tmp_path: Path) -> None:
        """Test exporting an empty cluster raises."""
        registry = make_registry(tmp_path)
        cid = registry.init_cluster(3)

        with pytest.raises(StateError):
            registry.get_cluster(cid)

    def test_unknown_id_raises(self, tmp_path: Path) -> None:
        """Test mutating an unknown id raises."""
        registry = make_registry(tmp_path)

        with pytest.raises(UnknownClusterError):
            registry.push_embedding(9, speech(13))
        with pytest.raises(UnknownClusterError):
            registry.get_cluster(9)
