"""Tests for secure field scrubbing."""

from dataclasses import dataclass, field

import pytest

from custodian.services.secure_wipe import derive_overwrite, generate_pattern, secure_wipe


@dataclass
class Sample:
    key: str
    owner: str
    count: int
    metadata: dict = field(default_factory=dict)


class TestSecureWipe:
    """Tests for secure_wipe."""

    def test_overwrites_strings_with_same_length(self):
        sample = Sample(key="k1", owner="alice@example.com", count=4)

        secure_wipe(sample)

        assert sample.owner != "alice@example.com"
        assert len(sample.owner) == len("alice@example.com")
        assert sample.count == 4

    def test_keep_leaves_fields_intact(self):
        sample = Sample(key="k1", owner="alice", count=1)

        result = secure_wipe(sample, keep=("key",))

        assert sample.key == "k1"
        assert result.fields_wiped == ("owner", "metadata")

    def test_mapping_values_are_scrubbed(self):
        sample = Sample(key="k1", owner="alice", count=1, metadata={"note": "private", "n": 3})

        secure_wipe(sample, keep=("key",))

        assert set(sample.metadata) == {"note", "n"}
        assert sample.metadata["note"] != "private"
        assert len(sample.metadata["note"]) == len("private")
        assert sample.metadata["n"] is None

    def test_pattern_hash_differs_each_wipe(self):
        first = secure_wipe(Sample(key="k", owner="a", count=0))
        second = secure_wipe(Sample(key="k", owner="a", count=0))

        assert len(first.pattern_hash) == 64
        assert first.pattern_hash != second.pattern_hash

    def test_rejects_non_dataclass(self):
        with pytest.raises(TypeError, match="dataclass instance"):
            secure_wipe({"owner": "alice"})

        with pytest.raises(TypeError):
            secure_wipe(Sample)


class TestDeriveOverwrite:
    """Tests for pattern-derived overwrite values."""

    def test_long_values_are_covered(self):
        pattern = generate_pattern()
        assert len(derive_overwrite(pattern, "field", 200)) == 200

    def test_labels_give_distinct_values(self):
        pattern = generate_pattern()
        assert derive_overwrite(pattern, "a", 32) != derive_overwrite(pattern, "b", 32)

    def test_empty_value(self):
        assert derive_overwrite(generate_pattern(), "x", 0) == ""
