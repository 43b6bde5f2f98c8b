"""Tests for dataset identifier parsing and the staging strategies."""

from __future__ import annotations

import io
import shutil
import tarfile
from pathlib import Path

import pytest

import ssllaunch.staging.stagers as stagers_module
from ssllaunch.config.schemas import StagingConfig
from ssllaunch.errors import (
    InvalidDatasetIdentifier,
    MissingSource,
    StagingError,
    UnsupportedExtension,
    UnsupportedSource,
)
from ssllaunch.staging import (
    Archive,
    DatasetStager,
    Directory,
    NamedCorpus,
    SourceKind,
    parse_identifier,
)
from ssllaunch.staging.registry import RegistryError, available_stagers, register_stager
from ssllaunch.staging.sources import archive_format, archive_stem
from ssllaunch.staging.transfer import extract_tar

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_tree(root: Path, files: dict[str, bytes]) -> Path:
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


def _make_tar(path: Path, files: dict[str, bytes], mode: str = "w") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, mode) as archive:
        for name, content in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    return path


def _make_tar_of_files(path: Path, members: dict[str, Path]) -> Path:
    with tarfile.open(path, "w") as archive:
        for name, source in members.items():
            archive.add(source, arcname=name)
    return path


# ---------------------------------------------------------------------------
# Identifier parsing
# ---------------------------------------------------------------------------


class TestParseIdentifier:
    @pytest.mark.parametrize(
        ("identifier", "kind"),
        [
            ("imagenet", "imagenet"),
            ("imagenette", "imagenette"),
            ("imagenette2-160", "imagenette"),
            ("ImageNet", "imagenet"),
        ],
    )
    def test_named_corpora(self, identifier: str, kind: str) -> None:
        assert parse_identifier(identifier) == NamedCorpus(kind)

    def test_directory(self, tmp_path: Path) -> None:
        (tmp_path / "mydata").mkdir()

        assert parse_identifier(str(tmp_path / "mydata")) == Directory(tmp_path / "mydata")

    @pytest.mark.parametrize(
        ("name", "fmt"), [("a.tar", "tar"), ("b.tgz", "tgz"), ("c.tar.gz", "tar.gz")]
    )
    def test_archive_files(self, tmp_path: Path, name: str, fmt: str) -> None:
        (tmp_path / name).write_bytes(b"")

        assert parse_identifier(str(tmp_path / name)) == Archive(tmp_path / name, fmt)

    def test_unsupported_extension(self, tmp_path: Path) -> None:
        (tmp_path / "data.zip").write_bytes(b"PK")

        with pytest.raises(UnsupportedExtension, match=r"\.zip"):
            parse_identifier(str(tmp_path / "data.zip"))

    @pytest.mark.parametrize("identifier", ["", "   ", "cifar10", "/no/such/path"])
    def test_invalid_identifier(self, identifier: str) -> None:
        with pytest.raises(InvalidDatasetIdentifier):
            parse_identifier(identifier)

    def test_archive_helpers(self) -> None:
        assert archive_format("x/y/foo.TAR.GZ") == "tar.gz"
        assert archive_format("foo.gz") is None
        assert archive_stem("/a/foo.tar.gz") == "foo"
        assert archive_stem("imagenette2-160.tgz") == "imagenette2-160"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_all_variants_registered(self) -> None:
        assert available_stagers() == ["archive", "directory", "imagenet", "imagenette"]

    def test_duplicate_registration_rejected(self) -> None:
        with pytest.raises(RegistryError, match="already registered"):
            register_stager("archive")(type("Dup", (), {}))

    def test_unregistered_corpus_is_unsupported(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        import ssllaunch.staging.stager as stager_module

        monkeypatch.setattr(stager_module, "parse_identifier", lambda _: NamedCorpus("places365"))

        with pytest.raises(UnsupportedSource, match="places365"):
            DatasetStager(tmp_path / "data").stage("places365")

    def test_stager_rejects_mismatched_variant(self, tmp_path: Path) -> None:
        stager = stagers_module.DirectoryStager(tmp_path / "data", StagingConfig())

        with pytest.raises(UnsupportedSource, match="Archive cannot be staged as directory"):
            stager.target(Archive(tmp_path / "birds.tar", "tar"))


# ---------------------------------------------------------------------------
# Directory and archive stagers
# ---------------------------------------------------------------------------


class TestDirectoryStaging:
    def test_mirrors_tree(self, tmp_path: Path) -> None:
        source = _make_tree(
            tmp_path / "src" / "flowers",
            {"train/a/1.jpg": b"1", "val/a/2.jpg": b"2"},
        )
        data_root = tmp_path / "local"

        location = DatasetStager(data_root).stage(str(source))

        assert location.root == data_root / "flowers"
        assert location.kind is SourceKind.DIRECTORY
        assert (location.train_dir / "a" / "1.jpg").read_bytes() == b"1"
        assert (location.val_dir / "a" / "2.jpg").read_bytes() == b"2"


class TestArchiveStaging:
    def test_tar_gz_lands_under_base_name(self, tmp_path: Path) -> None:
        archive = _make_tar(
            tmp_path / "src" / "birds.tar.gz",
            {"birds/train/x/1.jpg": b"1", "birds/val/x/2.jpg": b"2"},
            mode="w:gz",
        )
        data_root = tmp_path / "local"

        location = DatasetStager(data_root).stage(str(archive))

        assert location.root == data_root / "birds"
        assert location.kind is SourceKind.ARCHIVE
        assert (location.train_dir / "x" / "1.jpg").exists()
        assert not (data_root / "birds.tar.gz").exists()
        assert archive.exists()

    def test_zip_aborts_before_any_transfer(self, tmp_path: Path) -> None:
        source = tmp_path / "src" / "birds.zip"
        source.parent.mkdir()
        source.write_bytes(b"PK\x03\x04")
        data_root = tmp_path / "local"

        with pytest.raises(UnsupportedExtension):
            DatasetStager(data_root).stage(str(source))

        assert not data_root.exists()

    def test_archive_without_matching_root_fails(self, tmp_path: Path) -> None:
        archive = _make_tar(tmp_path / "src" / "birds.tar", {"other/1.jpg": b"1"})

        with pytest.raises(StagingError, match="did not unpack"):
            DatasetStager(tmp_path / "local").stage(str(archive))

    def test_extract_rejects_path_traversal(self, tmp_path: Path) -> None:
        archive = _make_tar(tmp_path / "evil.tar", {"../escape.txt": b"x"})

        with pytest.raises(StagingError, match="escapes"):
            extract_tar(archive, tmp_path / "out")

        assert not (tmp_path / "escape.txt").exists()

    def test_extract_rejects_hard_link_outside_root(self, tmp_path: Path) -> None:
        outside = tmp_path / "outside.txt"
        outside.write_bytes(b"keep")
        archive_path = tmp_path / "link.tar"
        with tarfile.open(archive_path, "w") as archive:
            link = tarfile.TarInfo("d/h")
            link.type = tarfile.LNKTYPE
            link.linkname = "d/../../outside.txt"
            archive.addfile(link)
            payload = b"overwritten"
            info = tarfile.TarInfo("d/h")
            info.size = len(payload)
            archive.addfile(info, io.BytesIO(payload))

        with pytest.raises(StagingError, match="points outside"):
            extract_tar(archive_path, tmp_path / "out")

        assert outside.read_bytes() == b"keep"


# ---------------------------------------------------------------------------
# Named corpora
# ---------------------------------------------------------------------------


class TestImagenetteStaging:
    def test_downloads_and_uses_nested_folder(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        remote = _make_tar(
            tmp_path / "remote" / "imagenette2-160.tgz",
            {
                "imagenette2-160/train/n01440764/a.JPEG": b"a",
                "imagenette2-160/val/n01440764/b.JPEG": b"b",
            },
            mode="w:gz",
        )
        requested: list[str] = []

        def _fake_download(url: str, dest: Path, **_kwargs: object) -> Path:
            requested.append(url)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy(remote, dest)
            return dest

        monkeypatch.setattr(stagers_module, "download", _fake_download)
        data_root = tmp_path / "local"

        location = DatasetStager(data_root).stage("imagenette")

        assert requested == [StagingConfig().imagenette_url]
        assert location.root == data_root / "imagenette2-160"
        assert location.kind is SourceKind.SAMPLE_CORPUS
        assert location.train_dir.is_dir()
        assert location.val_dir.is_dir()
        assert not (data_root / "imagenette2-160.tgz").exists()

    def test_plan_does_not_touch_filesystem(self, tmp_path: Path) -> None:
        location = DatasetStager(tmp_path / "local").plan("imagenette2-160")

        assert location.root == tmp_path / "local" / "imagenette2-160"
        assert not (tmp_path / "local").exists()


class TestImagenetStaging:
    def _source_dir(self, tmp_path: Path, *, with_script: bool) -> Path:
        source = tmp_path / "shared" / "imagenet"
        source.mkdir(parents=True)
        staging = tmp_path / "build"

        inner_a = _make_tar(staging / "n01.tar", {"n01_1.JPEG": b"a1", "n01_2.JPEG": b"a2"})
        inner_b = _make_tar(staging / "n02.tar", {"n02_1.JPEG": b"b1"})
        _make_tar_of_files(
            source / "ILSVRC2012_img_train.tar", {"n01.tar": inner_a, "n02.tar": inner_b}
        )
        _make_tar(
            source / "ILSVRC2012_img_val.tar",
            {"ILSVRC2012_val_00000001.JPEG": b"v1", "ILSVRC2012_val_00000002.JPEG": b"v2"},
        )
        if with_script:
            (source / "valprep.sh").write_text(
                "mkdir -p n01\nmkdir -p n02\n"
                "mv ILSVRC2012_val_00000001.JPEG n01/\n"
                "mv ILSVRC2012_val_00000002.JPEG n02/\n",
                encoding="utf-8",
            )
        return source

    def test_stages_train_and_sorted_val(self, tmp_path: Path) -> None:
        source = self._source_dir(tmp_path, with_script=True)
        settings = StagingConfig(imagenet_source_dir=str(source))

        location = DatasetStager(tmp_path / "local", settings).stage("imagenet")

        assert location.kind is SourceKind.NAMED_CORPUS
        assert sorted(p.name for p in location.train_dir.iterdir()) == ["n01", "n02"]
        assert (location.train_dir / "n01" / "n01_2.JPEG").read_bytes() == b"a2"
        assert not list(location.train_dir.glob("*.tar"))
        assert (location.val_dir / "n01" / "ILSVRC2012_val_00000001.JPEG").exists()
        assert (location.val_dir / "n02" / "ILSVRC2012_val_00000002.JPEG").exists()
        assert not (location.val_dir / "valprep.sh").exists()
        assert not list(location.root.glob("*.tar"))

    def test_fetches_relabel_script_when_absent(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        source = self._source_dir(tmp_path, with_script=False)
        fetched: list[str] = []

        def _fake_download(url: str, dest: Path, **_kwargs: object) -> Path:
            fetched.append(url)
            dest.write_text(
                "mkdir -p n01\nmv ILSVRC2012_val_0000000*.JPEG n01/\n", encoding="utf-8"
            )
            return dest

        monkeypatch.setattr(stagers_module, "download", _fake_download)
        settings = StagingConfig(imagenet_source_dir=str(source))

        location = DatasetStager(tmp_path / "local", settings).stage("imagenet")

        assert fetched == [settings.valprep_url]
        assert len(list((location.val_dir / "n01").glob("*.JPEG"))) == 2

    def test_missing_source_dir(self, tmp_path: Path) -> None:
        with pytest.raises(MissingSource, match="not configured"):
            DatasetStager(tmp_path / "local").stage("imagenet")

    def test_missing_archive_parts(self, tmp_path: Path) -> None:
        empty = tmp_path / "empty"
        empty.mkdir()
        settings = StagingConfig(imagenet_source_dir=str(empty))

        with pytest.raises(MissingSource, match="ILSVRC2012"):
            DatasetStager(tmp_path / "local", settings).stage("imagenet")
