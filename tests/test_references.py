"""Tests for pdbrecon.references: both blob layouts and path classification."""

import uuid

import pytest
from pdb_builder import portable_reference, prefixed_references

from pdbrecon.references import (
    ImageKind,
    ReferenceBlobFormat,
    ReferenceDescriptor,
    infer_target_framework,
    is_framework_reference,
    is_package_reference,
    package_info_from_path,
    parse_reference_blob,
)

# ---------------------------------------------------------------------------
# Portable PDB layout
# ---------------------------------------------------------------------------


class TestPortableLayout:
    def test_entries_in_order(self) -> None:
        mvid = uuid.UUID("00112233-4455-6677-8899-aabbccddeeff")
        blob = (
            portable_reference("System.Runtime.dll")
            + portable_reference("Newtonsoft.Json.dll", "json,  legacy,json", timestamp=5, mvid=mvid)
            + portable_reference("Interop.dll", embed_interop=True, image_size=4096)
        )
        result = parse_reference_blob(blob)
        assert result.complete
        names = [r.file_name for r in result.references]
        assert names == ["System.Runtime.dll", "Newtonsoft.Json.dll", "Interop.dll"]

        json_ref = result.references[1]
        assert json_ref.extern_aliases == ("json", "legacy")
        assert json_ref.timestamp == 5
        assert json_ref.module_version_id == mvid
        assert not json_ref.embed_interop_types

        interop = result.references[2]
        assert interop.embed_interop_types
        assert interop.image_size == 4096
        assert interop.image_kind is ImageKind.ASSEMBLY

    def test_module_image_kind(self) -> None:
        result = parse_reference_blob(portable_reference("Part.netmodule", assembly=False))
        assert result.references[0].image_kind is ImageKind.MODULE

    def test_empty_blob(self) -> None:
        result = parse_reference_blob(b"")
        assert result.references == []
        assert result.complete

    def test_truncated_keeps_prefix(self) -> None:
        blob = portable_reference("A.dll") + portable_reference("B.dll")[:-5]
        result = parse_reference_blob(blob)
        assert [r.file_name for r in result.references] == ["A.dll"]
        assert not result.complete
        assert result.error is not None

    def test_invalid_utf8(self) -> None:
        result = parse_reference_blob(b"\xff\xfe\x00\x00" + b"\x01" + b"\x00" * 24)
        assert result.references == []
        assert "UTF-8" in str(result.error)

    def test_to_dict(self) -> None:
        ref = ReferenceDescriptor("X.dll", ("a",), embed_interop_types=True)
        data = ref.to_dict()
        assert data["file_name"] == "X.dll"
        assert data["extern_aliases"] == ["a"]
        assert data["image_kind"] == "assembly"
        assert data["module_version_id"] == "00000000-0000-0000-0000-000000000000"


# ---------------------------------------------------------------------------
# Count-prefixed layout
# ---------------------------------------------------------------------------


class TestPrefixedLayout:
    FMT = ReferenceBlobFormat.COMPRESSED_PREFIXED

    def test_entries(self) -> None:
        blob = prefixed_references(
            [("System.dll", [], False), ("Office.dll", ["office", "office"], True)]
        )
        result = parse_reference_blob(blob, self.FMT)
        assert result.complete
        assert [r.file_name for r in result.references] == ["System.dll", "Office.dll"]
        assert result.references[1].extern_aliases == ("office",)
        assert result.references[1].embed_interop_types
        assert not result.references[0].embed_interop_types

    def test_trailing_bytes(self) -> None:
        blob = prefixed_references([("A.dll", [], False)]) + b"\x00\x00"
        result = parse_reference_blob(blob, self.FMT)
        assert [r.file_name for r in result.references] == ["A.dll"]
        assert "trailing" in str(result.error)

    def test_count_exceeds_entries(self) -> None:
        blob = b"\x03" + prefixed_references([("A.dll", [], False)])[1:]
        result = parse_reference_blob(blob, self.FMT)
        assert len(result.references) == 1
        assert not result.complete

    def test_empty_blob_is_truncated(self) -> None:
        result = parse_reference_blob(b"", self.FMT)
        assert result.references == []
        assert not result.complete

    def test_formats_are_not_interchangeable(self) -> None:
        blob = portable_reference("A.dll")
        result = parse_reference_blob(blob, self.FMT)
        assert not result.complete


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassification:
    def test_framework_references(self) -> None:
        assert is_framework_reference("System.Runtime.dll")
        assert is_framework_reference("mscorlib.dll")
        assert is_framework_reference(
            "C:\\Program Files\\dotnet\\packs\\Microsoft.NETCore.App.Ref\\8.0.0\\ref\\net8.0\\Foo.dll"
        )
        assert not is_framework_reference("Newtonsoft.Json.dll")

    def test_package_references(self) -> None:
        path = "/home/u/.nuget/packages/newtonsoft.json/13.0.3/lib/net6.0/Newtonsoft.Json.dll"
        assert is_package_reference(path)
        assert package_info_from_path(path) == ("newtonsoft.json", "13.0.3")
        assert package_info_from_path("Newtonsoft.Json.dll") is None

    def test_descriptor_category(self) -> None:
        nuget = "/home/u/.nuget/packages/serilog/3.1.1/lib/net7.0/Serilog.dll"
        assert ReferenceDescriptor("System.Runtime.dll").category == "framework"
        assert ReferenceDescriptor(nuget).category == "package"
        assert ReferenceDescriptor("Lib.Core.dll").category == "other"
        data = ReferenceDescriptor(nuget).to_dict()
        assert data["category"] == "package"
        assert data["package"] == {"id": "serilog", "version": "3.1.1"}
        assert ReferenceDescriptor("Lib.Core.dll").to_dict()["package"] is None

    def test_package_paths_with_backslashes(self) -> None:
        path = "C:\\Users\\u\\.nuget\\packages\\serilog\\3.1.1\\lib\\net7.0\\Serilog.dll"
        assert package_info_from_path(path) == ("serilog", "3.1.1")

    def test_infer_target_framework(self) -> None:
        refs = [
            ReferenceDescriptor("System.Runtime.dll"),
            ReferenceDescriptor("/p/.nuget/packages/a/1.0.0/lib/netstandard2.0/A.dll"),
        ]
        assert infer_target_framework(refs) == "netstandard2.0"

    def test_infer_ignores_non_tfm_segments(self) -> None:
        refs = [ReferenceDescriptor("/repo/lib/vendor/A.dll")]
        assert infer_target_framework(refs) is None


# ---------------------------------------------------------------------------
# Truncation
# ---------------------------------------------------------------------------

_NAMES = ["System.Runtime.dll", "Newtonsoft.Json.dll", "Interop.dll"]
_PORTABLE_ENTRIES = [
    portable_reference(_NAMES[0]),
    portable_reference(_NAMES[1], "json"),
    portable_reference(_NAMES[2], embed_interop=True),
]
_PORTABLE_BLOB = b"".join(_PORTABLE_ENTRIES)
_PORTABLE_BOUNDARIES = {sum(len(e) for e in _PORTABLE_ENTRIES[:i]) for i in range(4)}
_PREFIXED_BLOB = prefixed_references(
    [(_NAMES[0], [], False), (_NAMES[1], ["json"], False), (_NAMES[2], [], True)]
)


class TestTruncation:
    @pytest.mark.parametrize("cut", range(len(_PORTABLE_BLOB)))
    def test_portable_prefix(self, cut: int) -> None:
        result = parse_reference_blob(_PORTABLE_BLOB[:cut])
        names = [r.file_name for r in result.references]
        assert names == _NAMES[: len(names)]
        assert result.complete == (cut in _PORTABLE_BOUNDARIES)

    @pytest.mark.parametrize("cut", range(len(_PREFIXED_BLOB)))
    def test_prefixed_prefix(self, cut: int) -> None:
        result = parse_reference_blob(
            _PREFIXED_BLOB[:cut], ReferenceBlobFormat.COMPRESSED_PREFIXED
        )
        names = [r.file_name for r in result.references]
        assert names == _NAMES[: len(names)]
        assert len(names) < 3
        assert not result.complete
