"""Tests for archive extraction and the staged installer."""
import io
import os
import stat
import tarfile
import zipfile
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from common.errors import InstallError
from conftest import build_wheel, wheel_descriptor
from index.models import ArtifactDescriptor, ArtifactKind
from installer import Installer, InstalledEntry, PipWheelBuilder, SourceBuilder
from installer.build import find_project_dir
from installer.extract import check_member, extract_archive
from versioning.version import parse_version


def _package(name, version, kind=ArtifactKind.WHEEL):
    if kind is ArtifactKind.WHEEL:
        artifact = wheel_descriptor(name, version)
    else:
        artifact = ArtifactDescriptor(
            filename=f"{name}-{version}.tar.gz",
            version=parse_version(version),
            kind=ArtifactKind.SDIST,
            url="https://files.example.org/sdist.tar.gz",
            digest="sha256:" + "0" * 64,
        )
    return SimpleNamespace(name=name, version=parse_version(version), artifact=artifact)


def _files(root):
    return sorted(
        p.relative_to(root).as_posix()
        for p in root.rglob("*")
        if p.is_file() and ".pkgflow" not in p.relative_to(root).parts
    )


@pytest.fixture
def root(tmp_path):
    return tmp_path / "__pypackages__" / "3.11"


class TestCheckMember:
    """Member validation against the destination."""

    @pytest.mark.parametrize("name", ["/etc/passwd", "\\windows\\evil", "C:/evil", "../evil.py", "a/../../evil"])
    def test_rejects_escaping_names(self, tmp_path, name):
        with pytest.raises(InstallError):
            check_member(tmp_path / "a.whl", tmp_path, name)

    def test_allows_inner_parent_references(self, tmp_path):
        assert check_member(tmp_path / "a.whl", tmp_path, "pkg/sub/../mod.py") == "pkg/mod.py"

    def test_rejects_links_leaving_destination(self, tmp_path):
        with pytest.raises(InstallError):
            check_member(tmp_path / "a.tar", tmp_path, "pkg/link", "../../outside")
        with pytest.raises(InstallError):
            check_member(tmp_path / "a.tar", tmp_path, "pkg/link", "/etc/passwd")
        assert check_member(tmp_path / "a.tar", tmp_path, "pkg/link", "../pkg/mod.py") == "pkg/link"


class TestExtractArchive:
    """Unsafe archives are rejected before anything is written."""

    def test_zip_traversal_writes_nothing(self, tmp_path):
        archive = build_wheel(tmp_path / "bad-1.0-py3-none-any.whl", "bad", "1.0",
                              {"bad/__init__.py": "", "../evil.py": "x"})
        dest = tmp_path / "out"
        with pytest.raises(InstallError):
            extract_archive(archive, dest)
        assert not (tmp_path / "evil.py").exists()
        assert list(dest.iterdir()) == []

    def test_tar_symlink_escape_rejected(self, tmp_path):
        archive = tmp_path / "bad-1.0.tar.gz"
        with tarfile.open(archive, "w:gz") as tf:
            link = tarfile.TarInfo("bad-1.0/link")
            link.type = tarfile.SYMTYPE
            link.linkname = "../../../etc/passwd"
            tf.addfile(link)
        with pytest.raises(InstallError):
            extract_archive(archive, tmp_path / "out")

    def test_tar_symlink_chain_rejected(self, tmp_path):
        """Each link is textually inside, but resolving them in order leaves the destination."""
        dest = tmp_path / "work" / "out"
        archive = tmp_path / "chain-1.0.tar"
        data = b"owned\n"
        with tarfile.open(archive, "w") as tf:
            first = tarfile.TarInfo("d/a/b/link")
            first.type = tarfile.SYMTYPE
            first.linkname = "../../.."
            tf.addfile(first)
            second = tarfile.TarInfo("x")
            second.type = tarfile.SYMTYPE
            second.linkname = "d/a/b/link/../.."
            tf.addfile(second)
            payload = tarfile.TarInfo("x/evil.txt")
            payload.size = len(data)
            tf.addfile(payload, io.BytesIO(data))
        with pytest.raises(InstallError):
            extract_archive(archive, dest)
        assert not (tmp_path / "evil.txt").exists()
        assert not (tmp_path / "work" / "evil.txt").exists()
        assert list(dest.iterdir()) == []

    def test_tar_member_under_declared_link_rejected(self, tmp_path):
        archive = tmp_path / "alias-1.0.tar"
        data = b"x = 1\n"
        with tarfile.open(archive, "w") as tf:
            link = tarfile.TarInfo("pkg/alias")
            link.type = tarfile.SYMTYPE
            link.linkname = "real"
            tf.addfile(link)
            info = tarfile.TarInfo("pkg/alias/mod.py")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        with pytest.raises(InstallError) as exc_info:
            extract_archive(archive, tmp_path / "out")
        assert "pkg/alias" in str(exc_info.value)

    def test_zip_member_under_declared_link_rejected(self, tmp_path):
        archive = tmp_path / "alias-1.0-py3-none-any.whl"
        with zipfile.ZipFile(archive, "w") as zf:
            link = zipfile.ZipInfo("alias/up")
            link.external_attr = (stat.S_IFLNK | 0o777) << 16
            zf.writestr(link, "..")
            zf.writestr("alias/up/evil.py", "x")
        dest = tmp_path / "out"
        with pytest.raises(InstallError):
            extract_archive(archive, dest)
        assert list(dest.iterdir()) == []

    def test_existing_link_in_destination_not_followed(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        dest = tmp_path / "out"
        dest.mkdir()
        (dest / "sub").symlink_to(outside)
        archive = tmp_path / "sub-1.0.tar"
        data = b"x"
        with tarfile.open(archive, "w") as tf:
            info = tarfile.TarInfo("sub/evil.txt")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        with pytest.raises(InstallError):
            extract_archive(archive, dest)
        assert list(outside.iterdir()) == []

    def test_tar_keeps_internal_symlinks(self, tmp_path):
        archive = tmp_path / "links-1.0.tar"
        data = b"x = 1\n"
        with tarfile.open(archive, "w") as tf:
            info = tarfile.TarInfo("pkg/mod.py")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
            link = tarfile.TarInfo("pkg/alias.py")
            link.type = tarfile.SYMTYPE
            link.linkname = "mod.py"
            tf.addfile(link)
        extract_archive(archive, tmp_path / "out")
        alias = tmp_path / "out" / "pkg" / "alias.py"
        assert os.readlink(alias) == "mod.py"
        assert alias.read_bytes() == data

    def test_tar_extracts_regular_files(self, tmp_path):
        archive = tmp_path / "good-1.0.tar.gz"
        data = b"print('hi')\n"
        with tarfile.open(archive, "w:gz") as tf:
            info = tarfile.TarInfo("good-1.0/setup.py")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        extract_archive(archive, tmp_path / "out")
        assert (tmp_path / "out" / "good-1.0" / "setup.py").read_bytes() == data

    def test_unknown_format(self, tmp_path):
        archive = tmp_path / "thing.rar"
        archive.write_bytes(b"")
        with pytest.raises(InstallError):
            extract_archive(archive, tmp_path / "out")

    def test_corrupt_zip(self, tmp_path):
        archive = tmp_path / "broken-1.0-py3-none-any.whl"
        archive.write_bytes(b"not a zip")
        with pytest.raises(InstallError):
            extract_archive(archive, tmp_path / "out")


class TestInstaller:
    """Staging, layout, upgrades and rollback."""

    def test_wheel_layout(self, tmp_path, root):
        wheel = build_wheel(tmp_path / "demo-1.0-py3-none-any.whl", "demo", "1.0", {
            "demo/__init__.py": "VERSION = '1.0'\n",
            "demo-1.0.data/purelib/demo_extra.py": "",
            "demo-1.0.data/scripts/demo-cli": "#!python\nimport demo\n",
        })
        entry = Installer().install(wheel, _package("demo", "1.0"), root)
        assert entry.version == parse_version("1.0")
        assert _files(root) == [
            "bin/demo-cli",
            "lib/demo-1.0.dist-info/METADATA",
            "lib/demo-1.0.dist-info/WHEEL",
            "lib/demo/__init__.py",
            "lib/demo_extra.py",
        ]
        assert set(entry.files) == set(_files(root))
        script = root / "bin" / "demo-cli"
        assert script.read_text().startswith("#!/usr/bin/env python3\n")
        assert os.stat(script).st_mode & stat.S_IXUSR
        assert [e.name for e in Installer.installed(root)] == ["demo"]

    def test_staging_discarded(self, tmp_path, root):
        wheel = build_wheel(tmp_path / "demo-1.0-py3-none-any.whl", "demo", "1.0", {"demo/__init__.py": ""})
        Installer().install(wheel, _package("demo", "1.0"), root)
        leftovers = [p.name for p in (root / ".pkgflow").iterdir()]
        assert leftovers == ["installed"]

    def test_upgrade_removes_old_files(self, tmp_path, root):
        installer = Installer()
        old = build_wheel(tmp_path / "demo-1.0-py3-none-any.whl", "demo", "1.0",
                          {"demo/__init__.py": "", "demo/legacy.py": ""})
        new = build_wheel(tmp_path / "demo-2.0-py3-none-any.whl", "demo", "2.0",
                          {"demo/__init__.py": "", "demo/modern.py": ""})
        installer.install(old, _package("demo", "1.0"), root)
        installer.install(new, _package("demo", "2.0"), root)
        files = _files(root)
        assert "lib/demo/legacy.py" not in files
        assert "lib/demo-1.0.dist-info/METADATA" not in files
        assert not (root / "lib" / "demo-1.0.dist-info").exists()
        assert "lib/demo/modern.py" in files
        assert InstalledEntry.load(root, "demo").version == parse_version("2.0")

    def test_traversal_leaves_previous_version(self, tmp_path, root):
        installer = Installer()
        good = build_wheel(tmp_path / "demo-1.0-py3-none-any.whl", "demo", "1.0", {"demo/__init__.py": ""})
        installer.install(good, _package("demo", "1.0"), root)
        before = _files(root)
        bad = build_wheel(tmp_path / "demo-2.0-py3-none-any.whl", "demo", "2.0",
                          {"demo/__init__.py": "", "../../escape.py": ""})
        with pytest.raises(InstallError):
            installer.install(bad, _package("demo", "2.0"), root)
        assert _files(root) == before
        assert not (tmp_path / "escape.py").exists()
        assert InstalledEntry.load(root, "demo").version == parse_version("1.0")

    def test_failed_move_rolls_back(self, tmp_path, root):
        installer = Installer()
        old = build_wheel(tmp_path / "demo-1.0-py3-none-any.whl", "demo", "1.0",
                          {"demo/__init__.py": "OLD = True\n"})
        new = build_wheel(tmp_path / "demo-2.0-py3-none-any.whl", "demo", "2.0",
                          {"demo/__init__.py": "NEW = True\n", "demo/new.py": ""})
        installer.install(old, _package("demo", "1.0"), root)
        before = _files(root)
        real_replace = os.replace

        def flaky_replace(src, dst):
            dst_text = str(dst)
            if dst_text.endswith(os.path.join("demo", "new.py")) and ".pkgflow" not in dst_text:
                raise OSError("disk full")
            return real_replace(src, dst)

        with patch("installer.installer.os.replace", side_effect=flaky_replace):
            with pytest.raises(InstallError):
                installer.install(new, _package("demo", "2.0"), root)
        assert _files(root) == before
        assert (root / "lib" / "demo" / "__init__.py").read_text() == "OLD = True\n"
        assert InstalledEntry.load(root, "demo").version == parse_version("1.0")

    def test_refuses_files_owned_by_another_package(self, tmp_path, root):
        installer = Installer()
        first = build_wheel(tmp_path / "a-1.0-py3-none-any.whl", "a", "1.0",
                            {"a/__init__.py": "", "shared/__init__.py": "OWNER = 'a'\n"})
        second = build_wheel(tmp_path / "b-1.0-py3-none-any.whl", "b", "1.0",
                             {"b/__init__.py": "", "shared/__init__.py": "OWNER = 'b'\n"})
        installer.install(first, _package("a", "1.0"), root)
        before = _files(root)
        with pytest.raises(InstallError) as exc_info:
            installer.install(second, _package("b", "1.0"), root)
        assert "a 1.0" in str(exc_info.value)
        assert "lib/shared/__init__.py" in str(exc_info.value)
        assert _files(root) == before
        assert (root / "lib" / "shared" / "__init__.py").read_text() == "OWNER = 'a'\n"
        assert [e.name for e in Installer.installed(root)] == ["a"]
        assert installer.uninstall("b", root) is None
        assert (root / "lib" / "shared" / "__init__.py").exists()

    def test_upgrade_keeps_own_files(self, tmp_path, root):
        """Files recorded for the same package are replaced, not treated as a clash."""
        installer = Installer()
        for version in ("1.0", "1.1"):
            wheel = build_wheel(tmp_path / f"demo-{version}-py3-none-any.whl", "demo", version,
                                {"demo/__init__.py": f"V = {version!r}\n"})
            installer.install(wheel, _package("demo", version), root)
        assert (root / "lib" / "demo" / "__init__.py").read_text() == "V = '1.1'\n"

    def test_locks_are_per_instance_and_per_root(self, tmp_path, root):
        first, second = Installer(), Installer()
        for name in ("one", "two", "three"):
            wheel = build_wheel(tmp_path / f"{name}-1.0-py3-none-any.whl", name, "1.0", {f"{name}/__init__.py": ""})
            first.install(wheel, _package(name, "1.0"), root)
        first.uninstall("two", root)
        assert len(first._locks) == 1
        assert second._locks == {}
        assert first._lock_for(root) is not second._lock_for(root)

    def test_unwritable_work_area(self, tmp_path, root):
        wheel = build_wheel(tmp_path / "demo-1.0-py3-none-any.whl", "demo", "1.0", {"demo/__init__.py": ""})
        with patch("installer.installer.tempfile.mkdtemp", side_effect=OSError("No space left on device")):
            with pytest.raises(InstallError) as exc_info:
                Installer().install(wheel, _package("demo", "1.0"), root)
        assert "No space left" in str(exc_info.value)

    def test_wheel_without_dist_info_rejected(self, tmp_path, root):
        wheel = tmp_path / "demo-1.0-py3-none-any.whl"
        with zipfile.ZipFile(wheel, "w") as zf:
            zf.writestr("demo/__init__.py", "")
        with pytest.raises(InstallError):
            Installer().install(wheel, _package("demo", "1.0"), root)

    def test_uninstall(self, tmp_path, root):
        installer = Installer()
        wheel = build_wheel(tmp_path / "demo-1.0-py3-none-any.whl", "demo", "1.0", {"demo/sub/mod.py": ""})
        installer.install(wheel, _package("demo", "1.0"), root)
        removed = installer.uninstall("demo", root)
        assert removed.name == "demo"
        assert _files(root) == []
        assert not (root / "lib" / "demo").exists()
        assert Installer.installed(root) == []
        assert installer.uninstall("demo", root) is None


class _FakeBuilder(SourceBuilder):
    def __init__(self, tmp_path):
        self.tmp_path = tmp_path
        self.sources = []

    def build(self, source_dir, output_dir):
        self.sources.append(find_project_dir(source_dir))
        output_dir.mkdir(parents=True, exist_ok=True)
        return build_wheel(output_dir / "built-1.0-py3-none-any.whl", "built", "1.0", {"built/__init__.py": ""})


class TestSourceDistributions:
    """Sdists are extracted and handed to a builder."""

    def _sdist(self, tmp_path):
        archive = tmp_path / "built-1.0.tar.gz"
        data = b"from setuptools import setup\nsetup()\n"
        with tarfile.open(archive, "w:gz") as tf:
            info = tarfile.TarInfo("built-1.0/setup.py")
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
        return archive

    def test_sdist_built_then_installed(self, tmp_path, root):
        builder = _FakeBuilder(tmp_path)
        entry = Installer(builder=builder).install(
            self._sdist(tmp_path), _package("built", "1.0", ArtifactKind.SDIST), root
        )
        assert builder.sources[0].name == "built-1.0"
        assert "lib/built/__init__.py" in entry.files

    def test_pip_builder_command(self, tmp_path):
        cmd = PipWheelBuilder(python="/usr/bin/python3").command(tmp_path / "src", tmp_path / "dist")
        assert cmd[:4] == ["/usr/bin/python3", "-m", "pip", "wheel"]
        assert "--no-deps" in cmd
        assert cmd[-1] == str(tmp_path / "src")

    @patch("installer.build.subprocess.run")
    def test_pip_builder_failure(self, mock_run, tmp_path):
        project = tmp_path / "src" / "pkg-1.0"
        project.mkdir(parents=True)
        (project / "pyproject.toml").write_text("[project]\nname='pkg'\n")
        mock_run.return_value = SimpleNamespace(returncode=1, stderr="error: boom\n", stdout="")
        with pytest.raises(InstallError) as exc_info:
            PipWheelBuilder().build(tmp_path / "src", tmp_path / "dist")
        assert "boom" in str(exc_info.value)

    def test_project_dir_required(self, tmp_path):
        (tmp_path / "empty").mkdir()
        with pytest.raises(InstallError):
            find_project_dir(tmp_path / "empty")
