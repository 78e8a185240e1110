import pytest

from security_gate.artifacts import FileArtifactStore, RedisArtifactStore, check_name


@pytest.mark.unit
class TestCheckName:

    @pytest.mark.parametrize("value", ["run-1", "1234567890", "gate-report.json", "a_b.c"])
    def test_accepts_safe_names(self, value):
        assert check_name(value, "run id") == value

    @pytest.mark.parametrize("value", ["", "../etc/passwd", "a/b", ".hidden", "run id", "x:y"])
    def test_rejects_unsafe_names(self, value):
        with pytest.raises(ValueError, match="Invalid run id"):
            check_name(value, "run id")


@pytest.mark.unit
class TestFileArtifactStore:

    def test_put_writes_under_run_directory(self, tmp_path):
        store = FileArtifactStore(tmp_path / "artifacts")

        ref = store.put("run-1", "gate-report.json", b"{}")

        assert ref == str(tmp_path / "artifacts" / "run-1" / "gate-report.json")
        assert (tmp_path / "artifacts" / "run-1" / "gate-report.json").read_bytes() == b"{}"

    def test_put_rejects_traversal(self, tmp_path):
        store = FileArtifactStore(tmp_path)
        with pytest.raises(ValueError):
            store.put("..", "gate-report.json", b"{}")


@pytest.mark.unit
class TestRedisArtifactStore:

    def test_put_sets_key_with_expiry(self, mock_redis_client):
        store = RedisArtifactStore(mock_redis_client, ttl=120)

        ref = store.put("run-1", "gate-summary.md", b"# report")

        assert ref == "gate:run-1:artifact:gate-summary.md"
        assert mock_redis_client.get(ref) == b"# report"
        mock_redis_client.expire.assert_called_once_with(ref, 120)
