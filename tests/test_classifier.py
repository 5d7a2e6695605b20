"""Tests for change classification."""

import itertools

import pytest

from gitsync.classifier import ChangeKind, ChangeRecord, RawChange, classify, levenshtein


def _kinds(records):
    return {r.path: (r.kind, r.previous_path) for r in records}


def _table(table):
    """Similarity function from ``{(old_id, new_id): score}``, symmetric."""
    def similarity(a, b):
        return table.get((a, b), table.get((b, a), 0.0))
    return similarity


class TestLevenshtein:
    @pytest.mark.parametrize("a, b, expected", [
        ("", "", 0),
        ("abc", "", 3),
        ("kitten", "sitting", 3),
        ("docs/a.md", "docs/b.md", 1),
        ("same", "same", 0),
    ])
    def test_distance(self, a, b, expected):
        assert levenshtein(a, b) == expected
        assert levenshtein(b, a) == expected


class TestBasicKinds:
    def test_new_modified_deleted(self):
        records = classify([
            RawChange("added.txt", None, b"1"),
            RawChange("changed.txt", b"2", b"3"),
            RawChange("gone.txt", b"4", None),
        ])
        assert _kinds(records) == {
            "added.txt": (ChangeKind.NEW, None),
            "changed.txt": (ChangeKind.MODIFIED, None),
            "gone.txt": (ChangeKind.DELETED, None),
        }

    def test_unchanged_paths_not_reported(self):
        records = classify([RawChange("same.txt", b"1", b"1")])
        assert records == []

    def test_output_sorted_by_path(self):
        records = classify([
            RawChange("z.txt", None, b"1"),
            RawChange("a.txt", None, b"2"),
            RawChange("m/x.txt", b"3", None),
        ])
        assert [r.path for r in records] == ["a.txt", "m/x.txt", "z.txt"]

    def test_duplicate_path_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            classify([RawChange("a", None, b"1"), RawChange("a", b"1", None)])

    def test_string_values(self):
        assert ChangeKind.RENAMED.value == "RENAMED"
        assert ChangeKind("COPIED") is ChangeKind.COPIED


class TestRenames:
    def test_exact_rename(self):
        records = classify([
            RawChange("old/name.txt", b"abc", None),
            RawChange("new/name.txt", None, b"abc"),
        ])
        assert len(records) == 1
        rec = records[0]
        assert rec.kind is ChangeKind.RENAMED
        assert rec.previous_path == "old/name.txt"
        assert rec.similarity == 1.0

    def test_similar_rename_above_threshold(self):
        sim = _table({(b"v1", b"v2"): 0.8})
        records = classify(
            [RawChange("a.txt", b"v1", None), RawChange("b.txt", None, b"v2")],
            similarity=sim,
        )
        assert _kinds(records) == {"b.txt": (ChangeKind.RENAMED, "a.txt")}

    def test_below_threshold_is_new_and_deleted(self):
        sim = _table({(b"v1", b"v2"): 0.3})
        records = classify(
            [RawChange("a.txt", b"v1", None), RawChange("b.txt", None, b"v2")],
            similarity=sim,
        )
        assert _kinds(records) == {
            "a.txt": (ChangeKind.DELETED, None),
            "b.txt": (ChangeKind.NEW, None),
        }

    def test_threshold_is_tunable(self):
        sim = _table({(b"v1", b"v2"): 0.3})
        changes = [RawChange("a.txt", b"v1", None), RawChange("b.txt", None, b"v2")]
        records = classify(changes, similarity=sim, threshold=0.25)
        assert records[0].kind is ChangeKind.RENAMED

    def test_equal_ids_skip_similarity_call(self):
        def boom(a, b):
            raise AssertionError("similarity should not be called")
        records = classify(
            [RawChange("a", b"x", None), RawChange("b", None, b"x")],
            similarity=boom,
        )
        assert records[0].kind is ChangeKind.RENAMED

    def test_highest_similarity_wins(self):
        sim = _table({(b"s1", b"t"): 0.6, (b"s2", b"t"): 0.9})
        records = classify(
            [
                RawChange("src1", b"s1", None),
                RawChange("src2", b"s2", None),
                RawChange("target", None, b"t"),
            ],
            similarity=sim,
        )
        kinds = _kinds(records)
        assert kinds["target"] == (ChangeKind.RENAMED, "src2")
        assert kinds["src1"] == (ChangeKind.DELETED, None)

    def test_tie_broken_by_path_distance(self):
        records = classify([
            RawChange("zzz/other.txt", b"x", None),
            RawChange("docs/readme.txt", b"x", None),
            RawChange("docs/readme.md", None, b"x"),
        ])
        kinds = _kinds(records)
        assert kinds["docs/readme.md"] == (ChangeKind.RENAMED, "docs/readme.txt")
        assert kinds["zzz/other.txt"] == (ChangeKind.DELETED, None)

    def test_each_source_renamed_once(self):
        records = classify([
            RawChange("orig", b"x", None),
            RawChange("copy1", None, b"x"),
            RawChange("copy2", None, b"x"),
        ])
        kinds = _kinds(records)
        assert sorted(k for k, _ in kinds.values()) == [ChangeKind.COPIED, ChangeKind.RENAMED]
        assert all(prev == "orig" for _, prev in kinds.values())
        assert "orig" not in kinds


class TestCopies:
    def test_copy_from_unchanged_file(self):
        records = classify([
            RawChange("keep.txt", b"x", b"x"),
            RawChange("dup.txt", None, b"x"),
        ])
        assert _kinds(records) == {"dup.txt": (ChangeKind.COPIED, "keep.txt")}

    def test_copy_from_modified_file_uses_old_content(self):
        records = classify([
            RawChange("base.txt", b"x", b"y"),
            RawChange("dup.txt", None, b"x"),
        ])
        assert _kinds(records) == {
            "base.txt": (ChangeKind.MODIFIED, None),
            "dup.txt": (ChangeKind.COPIED, "base.txt"),
        }

    def test_rename_with_identical_duplicate(self):
        """A moved file plus a byte-identical duplicate: one rename, one copy."""
        records = classify([
            RawChange("notes/todo.md", b"t", None),
            RawChange("archive/todo.md", None, b"t"),
            RawChange("notes/todo-copy.md", None, b"t"),
        ])
        kinds = _kinds(records)
        assert "notes/todo.md" not in kinds
        renamed = [p for p, (k, _) in kinds.items() if k is ChangeKind.RENAMED]
        copied = [p for p, (k, _) in kinds.items() if k is ChangeKind.COPIED]
        assert len(renamed) == 1 and len(copied) == 1
        assert all(prev == "notes/todo.md" for _, prev in kinds.values())
        assert not any(k in (ChangeKind.NEW, ChangeKind.DELETED) for k, _ in kinds.values())


class TestDeterminism:
    def test_input_order_does_not_matter(self):
        sim = _table({(b"a", b"a2"): 0.7, (b"b", b"a2"): 0.7, (b"c", b"c2"): 0.55})
        changes = [
            RawChange("one/a", b"a", None),
            RawChange("two/b", b"b", None),
            RawChange("one/a2", None, b"a2"),
            RawChange("c", b"c", b"c"),
            RawChange("c-copy", None, b"c2"),
            RawChange("mod", b"m1", b"m2"),
        ]
        expected = classify(changes, similarity=sim)
        for perm in itertools.permutations(changes):
            assert classify(list(perm), similarity=sim) == expected


class TestChangeRecord:
    def test_previous_path_required_for_rename(self):
        with pytest.raises(ValueError):
            ChangeRecord("a", ChangeKind.RENAMED)

    def test_previous_path_forbidden_for_new(self):
        with pytest.raises(ValueError):
            ChangeRecord("a", ChangeKind.NEW, previous_path="b")

    def test_str(self):
        assert str(ChangeRecord("b", ChangeKind.RENAMED, "a", 1.0)) == "RENAMED   a -> b"
        assert str(ChangeRecord("b", ChangeKind.NEW)) == "NEW       b"
