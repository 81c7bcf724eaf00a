"""Tests for SpeakerModel."""

from pathlib import Path

import numpy as np
import pytest
from conftest import HashEmbed, speech

from speakerid import npy_io
from speakerid.embedding import Embedder, fold_into_mean, l2_normalize
from speakerid.exceptions import EnrollmentError, NotEnrolledError, ValidationError
from speakerid.model import SpeakerModel, cluster_label
from speakerid.settings import SpeakerIdSettings
from speakerid.store import SpeakerModelStore


def make_model(settings: SpeakerIdSettings, embed=None) -> SpeakerModel:
    return SpeakerModel(
        SpeakerModelStore.from_settings(settings),
        Embedder(embed or HashEmbed(), settings),
        settings,
    )


def unit_vectors(n: int, dim: int = 4, seed: int = 0) -> list[np.ndarray]:
    rng = np.random.default_rng(seed)
    return [rng.standard_normal(dim).astype(np.float32) for _ in range(n)]


class TestEnrollment:
    """Tests for enrollment."""

    def test_first_k_embeddings_kept(self, settings: SpeakerIdSettings) -> None:
        """Test only the first cluster_size embeddings form the cluster."""
        model = make_model(settings)
        embeddings = unit_vectors(7)

        result = model.enroll_from_embeddings(embeddings)

        assert result.cluster_size == 5
        assert result.embedding_dim == 4
        assert model.count == 5
        np.testing.assert_allclose(
            model.cluster, np.stack([l2_normalize(e) for e in embeddings[:5]]), atol=1e-6
        )
        assert settings.mean_path.with_name("speaker_emb.npy.count").read_text() == "5"

    def test_files_persisted(self, settings: SpeakerIdSettings) -> None:
        """Test the mean is a vector and the cluster a KxD matrix on disk."""
        model = make_model(settings)

        model.enroll_from_embeddings(unit_vectors(3))

        assert npy_io.read_array(settings.mean_path).shape == (4,)
        assert npy_io.read_array(settings.cluster_path).shape == (3, 4)
        assert model.has_enrollment() is True

    def test_enroll_from_segment(self, settings: SpeakerIdSettings) -> None:
        """Test 3.2s of voiced audio gives four one-second slices."""
        embed = HashEmbed()
        model = make_model(settings, embed)

        result = model.enroll_from_segment(speech(40))

        assert result.cluster_size == 4
        assert result.embedding_dim == 16
        assert embed.calls == [16000, 16000, 16000, 10480]

    def test_short_segment_embedded_once(self, settings: SpeakerIdSettings) -> None:
        """Test a sub-slice segment still yields one exemplar."""
        model = make_model(settings)

        result = model.enroll_from_segment(speech(2))

        assert result.cluster_size == 1

    def test_empty_segment_raises(self, settings: SpeakerIdSettings) -> None:
        """Test enrolling from nothing raises."""
        with pytest.raises(EnrollmentError):
            make_model(settings).enroll_from_segment(np.zeros(0, dtype=np.int16))

    def test_no_embeddings_raises(self, settings: SpeakerIdSettings) -> None:
        """Test an empty embedding list raises."""
        with pytest.raises(EnrollmentError):
            make_model(settings).enroll_from_embeddings([])

    def test_dim_mismatch_raises(self, settings: SpeakerIdSettings) -> None:
        """Test mixed dimensions are rejected before anything is written."""
        model = make_model(settings)

        with pytest.raises(ValidationError):
            model.enroll_from_embeddings([np.ones(4), np.ones(5)])
        assert not settings.mean_path.exists()

    def test_non_finite_raises(self, settings: SpeakerIdSettings) -> None:
        """Test NaN exemplars are rejected."""
        with pytest.raises(ValidationError):
            make_model(settings).enroll_from_embeddings([np.array([1.0, np.nan])])


class TestTargets:
    """Tests for target assembly."""

    def test_labels(self, settings: SpeakerIdSettings) -> None:
        """Test the mean comes first, then c#1..c#K."""
        model = make_model(settings)
        model.enroll_from_embeddings(unit_vectors(3))

        labels = [label for label, _ in model.targets()]

        assert labels == ["mean", "c#1", "c#2", "c#3"]
        assert cluster_label(0) == "c#1"

    def test_not_enrolled(self, settings: SpeakerIdSettings) -> None:
        """Test an empty store raises NotEnrolledError."""
        with pytest.raises(NotEnrolledError):
            make_model(settings).targets()

    def test_mean_rebuilt_lazily(self, settings: SpeakerIdSettings) -> None:
        """Test a model with only a cluster file rebuilds its mean."""
        store = SpeakerModelStore.from_settings(settings)
        store.save_cluster(np.array([[1.0, 0.0], [0.0, 1.0]]))
        model = make_model(settings)
        model.load()

        targets = model.targets()

        np.testing.assert_allclose(targets[0][1], [np.sqrt(0.5), np.sqrt(0.5)], atol=1e-6)
        assert settings.mean_path.exists()

    def test_reset_keeps_files(self, settings: SpeakerIdSettings) -> None:
        """Test reset clears memory only."""
        model = make_model(settings)
        model.enroll_from_embeddings(unit_vectors(2))

        model.reset()

        assert model.mean is None
        assert model.cluster is None
        assert model.has_enrollment() is True
        assert len(model.targets()) == 3

    def test_load_restores_state(self, settings: SpeakerIdSettings) -> None:
        """Test a new instance picks up persisted files."""
        make_model(settings).enroll_from_embeddings(unit_vectors(3))

        model = make_model(settings)
        model.load()

        assert model.count == 3
        assert model.cluster is not None
        assert model.cluster.shape == (3, 4)

    def test_load_rebuilds_mean_of_wrong_dim(self, settings: SpeakerIdSettings) -> None:
        """Test a mean whose length differs from the cluster rows is rebuilt on load."""
        store = SpeakerModelStore.from_settings(settings)
        store.save_cluster(np.array([[1.0, 0.0], [0.0, 1.0]]))
        store.save_mean(np.ones(3), 2)
        model = make_model(settings)

        model.load()

        assert model.mean is not None
        np.testing.assert_allclose(model.mean, [np.sqrt(0.5), np.sqrt(0.5)], atol=1e-6)
        assert all(len(target) == 2 for _, target in model.targets())

    def test_targets_rebuild_mean_of_wrong_dim(self, settings: SpeakerIdSettings) -> None:
        """Test lazily loaded targets never pair a mismatched mean with the cluster."""
        store = SpeakerModelStore.from_settings(settings)
        store.save_cluster(np.array([[1.0, 0.0], [0.0, 1.0]]))
        store.save_mean(np.ones(8), 2)

        targets = make_model(settings).targets()

        assert [len(target) for _, target in targets] == [2, 2, 2]
        assert npy_io.read_array(settings.mean_path).shape == (2,)


class TestAdaptation:
    """Tests for online adaptation."""

    def test_disabled_by_default(self, settings: SpeakerIdSettings) -> None:
        """Test a negative threshold never adapts."""
        assert make_model(settings).should_adapt(1.0) is False

    def test_threshold_and_budget(self, data_dir: Path) -> None:
        """Test adaptation respects the threshold and adapt_max."""
        s = SpeakerIdSettings(data_dir=data_dir, adapt_threshold=0.5, adapt_max=1)
        model = make_model(s)
        model.enroll_from_embeddings(unit_vectors(3, dim=16))

        assert model.should_adapt(0.4) is False
        assert model.should_adapt(0.5) is True

        model.adapt(speech(13))

        assert model.adapted_this_run == 1
        assert model.should_adapt(0.9) is False

    def test_running_mean_persisted(self, settings: SpeakerIdSettings) -> None:
        """Test the adapted mean and incremented count are written."""
        embedder = Embedder(HashEmbed(), settings)
        model = make_model(settings)
        model.enroll_from_embeddings(unit_vectors(3, dim=16))
        before = model.mean
        segment = speech(13)

        model.adapt(segment)

        expected, count = fold_into_mean(before, 3, embedder(segment))
        assert count == 4
        assert model.count == 4
        np.testing.assert_allclose(model.mean, expected, atol=1e-6)
        np.testing.assert_allclose(npy_io.load_vector(settings.mean_path), expected, atol=1e-6)
        assert npy_io.read_count(settings.mean_path) == 4
        # cluster is fixed after enrollment
        assert npy_io.read_array(settings.cluster_path).shape == (3, 16)
