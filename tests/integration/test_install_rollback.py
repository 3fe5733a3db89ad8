"""Integration tests — install and roll back modules that change real files."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import BaseModel

from serverforge.config import Settings
from serverforge.modules.base import BaseModule
from serverforge.modules.registry import ModuleRegistry
from serverforge.modules.undo import RestoreFile, UndoDescriptor
from serverforge.orchestration.checkpoint import CheckpointStore
from serverforge.orchestration.state import RunStatus


class FileConfig(BaseModel):
    path: str
    content: str


class FileModule(BaseModule):
    """Writes one file; undo restores whatever was there before."""

    VERSION = "1.0.0"
    CONFIG_MODEL = FileConfig

    async def plan_undo(self) -> UndoDescriptor:
        path = self.config.path
        prior = await self.host.read_file(path)
        mode = await self.host.file_mode(path)
        return UndoDescriptor(module=self.NAME).add(RestoreFile.capture(path, prior, mode))

    async def install(self) -> UndoDescriptor:
        undo = await self.plan_undo()
        await self.host.write_file(self.config.path, self.config.content.encode(), mode=0o644)
        return undo

    async def verify(self) -> None:
        if await self.host.read_file(self.config.path) != self.config.content.encode():
            raise RuntimeError(f"{self.config.path} does not hold the expected content")


class MotdModule(FileModule):
    NAME = "custom/motd"


class IssueModule(FileModule):
    NAME = "custom/issue"
    DEPENDENCIES = frozenset({"custom/motd"})


class BrokenModule(FileModule):
    NAME = "custom/broken"
    DEPENDENCIES = frozenset({"custom/issue"})

    async def verify(self) -> None:
        raise RuntimeError("service did not come up")


@pytest.fixture
def files(tmp_path: Path) -> dict[str, Path]:
    motd = tmp_path / "etc" / "motd"
    motd.parent.mkdir()
    motd.write_text("original motd\n")
    return {
        "custom/motd": motd,
        "custom/issue": tmp_path / "etc" / "issue",
        "custom/broken": tmp_path / "etc" / "broken.conf",
    }


@pytest.fixture
def file_settings(tmp_path: Path, files: dict[str, Path]) -> Settings:
    return Settings(
        engine={"state_dir": str(tmp_path / "state"), "operation_timeout_seconds": 5.0},
        modules={
            "settings": {
                name: {"path": str(path), "content": f"managed by {name}\n"}
                for name, path in files.items()
            }
        },
    )


def registry(*classes: type[BaseModule]) -> ModuleRegistry:
    reg = ModuleRegistry()
    for cls in classes:
        reg.register(cls)
    return reg


@pytest.mark.integration
class TestInstallRollback:
    async def test_install_then_roll_back_to_initial(
        self, make_engine, file_settings: Settings, files: dict[str, Path], store: CheckpointStore
    ) -> None:
        engine = make_engine(registry(MotdModule, IssueModule), settings=file_settings)

        report = await engine.run()

        assert report.status == RunStatus.COMPLETED
        assert report.installed == ["custom/motd", "custom/issue"]
        assert files["custom/motd"].read_text() == "managed by custom/motd\n"
        assert files["custom/issue"].read_text() == "managed by custom/issue\n"

        rollback = await engine.rollback_to("initial")

        assert rollback.rolled_back == ["custom/issue", "custom/motd"]
        assert files["custom/motd"].read_text() == "original motd\n"
        assert not files["custom/issue"].exists()
        latest = await store.load_latest()
        assert latest.completed_modules == ()

    async def test_rerun_skips_installed_modules(
        self, make_engine, file_settings: Settings, files: dict[str, Path]
    ) -> None:
        engine = make_engine(registry(MotdModule, IssueModule), settings=file_settings)
        await engine.run()
        files["custom/issue"].write_text("edited by hand\n")

        report = await engine.run()

        assert report.skipped == ["custom/motd", "custom/issue"]
        assert files["custom/issue"].read_text() == "edited by hand\n"

    async def test_verify_failure_restores_every_file(
        self, make_engine, file_settings: Settings, files: dict[str, Path], store: CheckpointStore
    ) -> None:
        engine = make_engine(
            registry(MotdModule, IssueModule, BrokenModule), settings=file_settings
        )

        report = await engine.run()

        assert report.status == RunStatus.ROLLED_BACK
        assert report.failed_module == "custom/broken"
        assert report.rollback.rolled_back == ["custom/broken", "custom/issue", "custom/motd"]
        assert files["custom/motd"].read_text() == "original motd\n"
        assert not files["custom/issue"].exists()
        assert not files["custom/broken"].exists()
        assert await store.dangling_intents() == []
