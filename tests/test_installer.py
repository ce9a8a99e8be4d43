import pytest
from conftest import alias, make_zip, version_entry

from featurepkg.exceptions import LockHeldError, SystemPackageError
from featurepkg.models.operation import NodeDependency
from featurepkg.models.state import PackageState
from featurepkg.services.packages import StateStore


def _publish(repo, name, versions, latest=None, chain=False, system=False, **entry_kwargs):
    """Publish ``versions`` (version -> archive files) with a latest alias."""
    manifest = {"system": system, "chainUpdate": chain, "versions": {}}
    archives = {}
    for version, files in versions.items():
        data = make_zip(files)
        archives[version] = data
        manifest["versions"][version] = version_entry(data, **entry_kwargs)
    manifest["versions"]["latest"] = alias(latest or list(versions)[-1])
    repo.publish(name, manifest, archives)
    return manifest


@pytest.mark.asyncio
async def test_fresh_install_extracts_archive(installer, repo, store, install_root):
    _publish(repo, "tool", {"1.0.0": {"bin/tool.txt": b"v1", "share/doc.txt": b"doc"}})

    result = await installer.install("tool")

    assert result.outcome == "installed"
    assert result.version == "1.0.0"
    assert (install_root / "bin" / "tool.txt").read_bytes() == b"v1"
    assert (install_root / "share" / "doc.txt").read_bytes() == b"doc"

    state = store.get_states()["tool"]
    assert state.status == "installed"
    assert state.version == "1.0.0"
    assert state.old_version is None
    assert "tool" in store.get_metadata()
    assert installer.list_installed() == ["tool"]
    assert store.get_lock().locked is False


@pytest.mark.asyncio
async def test_install_runs_and_registers_hooks(installer, repo, install_root):
    _publish(
        repo,
        "tool",
        {
            "1.0.0": {
                "bin/tool.txt": b"v1",
                "__scripts/install.py": b"from pathlib import Path\nPath('hook-ran.txt').write_text('ok')\n",
                "__scripts/uninstall.py": b"",
                "__scripts/README": b"not a hook",
            }
        },
    )

    result = await installer.install("tool")

    assert result.outcome == "installed"
    assert (install_root / "hook-ran.txt").read_text() == "ok"
    assert not (install_root / "__scripts").exists()
    assert installer.scripts.has_script("tool", "install")
    assert installer.scripts.has_script("tool", "uninstall")


@pytest.mark.asyncio
async def test_explicit_version_and_upgrade(installer, repo, store):
    _publish(repo, "tool", {"1.0.0": {"a.txt": b"1"}, "1.1.0": {"a.txt": b"2"}})

    result = await installer.install("tool", "1.0.0")
    assert result.version == "1.0.0"

    result = await installer.install("tool")
    assert result.outcome == "installed"
    assert result.version == "1.1.0"

    state = store.get_states()["tool"]
    assert state.version == "1.1.0"
    assert state.old_version == "1.0.0"


@pytest.mark.asyncio
async def test_already_up_to_date_leaves_state_untouched(installer, repo, store):
    _publish(repo, "tool", {"1.0.0": {"a.txt": b"1"}})
    await installer.install("tool")
    before = (store.data_dir / "state.json").read_bytes()
    downloads = len(repo.downloads())

    result = await installer.install("tool")

    assert result.outcome == "already_up_to_date"
    assert result.version == "1.0.0"
    assert result.ok
    assert (store.data_dir / "state.json").read_bytes() == before
    assert len(repo.downloads()) == downloads
    assert store.get_lock().locked is False


@pytest.mark.asyncio
async def test_chain_update_walks_every_version(installer, repo, store):
    _publish(
        repo,
        "tool",
        {"1.0.0": {"a.txt": b"1"}, "1.1.0": {"a.txt": b"2"}, "1.2.0": {"a.txt": b"3"}},
        chain=True,
    )

    result = await installer.install("tool")

    assert result.outcome == "installed"
    assert result.version == "1.2.0"
    assert [url.rsplit("/", 1)[-1] for url in repo.downloads()] == ["1.0.0", "1.1.0", "1.2.0"]
    state = store.get_states()["tool"]
    assert state.version == "1.2.0"
    assert state.old_version == "1.1.0"


@pytest.mark.asyncio
async def test_chain_update_continues_from_installed(installer, repo):
    _publish(
        repo,
        "tool",
        {"1.0.0": {"a.txt": b"1"}, "1.1.0": {"a.txt": b"2"}, "1.2.0": {"a.txt": b"3"}},
        chain=True,
    )
    await installer.install("tool", "1.1.0")

    result = await installer.install("tool")

    assert result.version == "1.2.0"
    assert [url.rsplit("/", 1)[-1] for url in repo.downloads()] == ["1.1.0", "1.2.0"]


@pytest.mark.asyncio
async def test_forced_chain_climbs_from_lowest_version(installer, repo, store):
    _publish(
        repo,
        "tool",
        {"1.0.0": {"a.txt": b"1"}, "1.1.0": {"a.txt": b"2"}, "1.2.0": {"a.txt": b"3"}},
        chain=True,
    )

    result = await installer.install("tool", "1.1.0", force_chain=True)

    assert result.version == "1.2.0"
    assert [url.rsplit("/", 1)[-1] for url in repo.downloads()] == ["1.0.0", "1.1.0", "1.2.0"]
    assert store.get_states()["tool"].version == "1.2.0"


@pytest.mark.asyncio
async def test_broken_archive_reverts_fresh_install(installer, repo, store):
    data = b"this is not a zip file"
    repo.publish("tool", {"versions": {"1.0.0": version_entry(data), "latest": alias("1.0.0")}}, {"1.0.0": data})

    result = await installer.install("tool")

    assert result.outcome == "reverted"
    assert not result.ok
    assert "cannot be extracted" in result.error
    assert "tool" not in store.get_states()
    assert store.get_lock().locked is False


@pytest.mark.asyncio
async def test_failed_upgrade_restores_previous_state(installer, repo, store):
    manifest = _publish(repo, "tool", {"1.0.0": {"a.txt": b"1"}})
    await installer.install("tool")

    broken = b"garbage"
    manifest["versions"]["1.1.0"] = version_entry(broken)
    manifest["versions"]["latest"] = alias("1.1.0")
    repo.publish("tool", manifest, {"1.1.0": broken})

    result = await installer.install("tool")

    assert result.outcome == "reverted"
    state = store.get_states()["tool"]
    assert state == PackageState(status="installed", version="1.0.0")


@pytest.mark.asyncio
async def test_unknown_version_is_reported(installer, store):
    result = await installer.install("ghost", "2.0.0")

    assert result.outcome == "reverted"
    assert "not found" in result.error
    assert store.get_states() == {}


@pytest.mark.asyncio
async def test_unsafe_archive_path_is_rejected(installer, repo, store, tmp_path):
    _publish(repo, "tool", {"1.0.0": {"../escape.txt": b"x"}})

    result = await installer.install("tool")

    assert result.outcome == "reverted"
    assert "escapes the install root" in result.error
    assert not (tmp_path / "escape.txt").exists()
    assert "tool" not in store.get_states()


@pytest.mark.asyncio
async def test_dependencies_are_installed_first(installer, repo, store):
    _publish(repo, "lib", {"1.0.0": {"lib/a.txt": b"lib1"}, "2.0.0": {"lib/a.txt": b"lib2"}})
    _publish(repo, "app", {"1.0.0": {"app/a.txt": b"app"}}, dependencies={"lib": "1.0.0"})

    result = await installer.install("app")

    assert result.outcome == "installed"
    states = store.get_states()
    assert states["lib"].version == "1.0.0"
    assert states["app"].version == "1.0.0"
    assert [url.rsplit("/", 3)[-3] for url in repo.downloads()] == ["lib", "app"]


@pytest.mark.asyncio
async def test_satisfied_dependency_is_not_reinstalled(installer, repo):
    _publish(repo, "lib", {"1.0.0": {"lib/a.txt": b"lib1"}})
    _publish(repo, "app", {"1.0.0": {"app/a.txt": b"app"}}, dependencies={"lib": "1.0.0"})
    await installer.install("lib")

    await installer.install("app")

    assert [url.rsplit("/", 3)[-3] for url in repo.downloads()] == ["lib", "app"]


@pytest.mark.asyncio
async def test_missing_dependency_reverts_dependent(installer, repo, store):
    _publish(repo, "app", {"1.0.0": {"app/a.txt": b"app"}}, dependencies={"ghost": "1.0.0"})

    result = await installer.install("app")

    assert result.outcome == "reverted"
    assert result.error == "Failed to resolve ghost (v=1.0.0) as dependency for app"
    assert store.get_states() == {}
    assert store.get_lock().locked is False


@pytest.mark.asyncio
async def test_dependency_cycle_terminates(installer, repo, store):
    _publish(repo, "a", {"1.0.0": {"a.txt": b"a"}}, dependencies={"b": "latest"})
    _publish(repo, "b", {"1.0.0": {"b.txt": b"b"}}, dependencies={"a": "latest"})

    result = await installer.install("a")

    assert result.outcome == "installed"
    assert sorted(installer.list_installed()) == ["a", "b"]


@pytest.mark.asyncio
async def test_node_dependencies_installed_in_one_batch(installer, repo, node):
    _publish(
        repo,
        "tool",
        {"1.0.0": {"a.txt": b"1"}},
        node_dependencies={"left-pad": "1.3.0", "chalk": "5.0.0"},
    )

    await installer.install("tool")

    assert node.installed == [
        [NodeDependency(name="left-pad", version="1.3.0"), NodeDependency(name="chalk", version="5.0.0")]
    ]


@pytest.mark.asyncio
async def test_install_while_locked_raises(installer, repo, store):
    _publish(repo, "tool", {"1.0.0": {"a.txt": b"1"}})
    other = StateStore(store.data_dir)
    other.acquire_lock()

    with pytest.raises(LockHeldError):
        await installer.install("tool")

    assert repo.requests == []
    assert other.get_states() == {}
    other.release_lock()


@pytest.mark.asyncio
async def test_remove_not_installed_is_noop(installer, store):
    documents = ("state.json", "metadata.json")
    before = {doc: (store.data_dir / doc).read_bytes() for doc in documents}

    result = await installer.remove("tool")

    assert result.outcome == "not_installed"
    assert {doc: (store.data_dir / doc).read_bytes() for doc in documents} == before
    assert store.get_lock().locked is False


@pytest.mark.asyncio
async def test_remove_respects_uninstall_action(installer, repo, store, install_root):
    _publish(
        repo,
        "tool",
        {"1.0.0": {"bin/tool.txt": b"bin", "conf/settings.txt": b"conf", "data/cache/x": b"x"}},
        files={"bin/tool.txt": "remove", "conf/settings.txt": "ignore", "data": "remove"},
    )
    await installer.install("tool")

    result = await installer.remove("tool")

    assert result.outcome == "removed"
    assert result.version == "1.0.0"
    assert not (install_root / "bin" / "tool.txt").exists()
    assert not (install_root / "data").exists()
    assert (install_root / "conf" / "settings.txt").read_bytes() == b"conf"
    assert store.get_states() == {}
    assert store.get_metadata() == {}
    assert store.get_lock().locked is False


@pytest.mark.asyncio
async def test_remove_runs_uninstall_hook(installer, repo, install_root):
    _publish(
        repo,
        "tool",
        {
            "1.0.0": {
                "a.txt": b"1",
                "__scripts/uninstall.py": b"from pathlib import Path\nPath('goodbye.txt').write_text('bye')\n",
            }
        },
    )
    await installer.install("tool")

    await installer.remove("tool")

    assert (install_root / "goodbye.txt").read_text() == "bye"
    assert not installer.scripts.has_script("tool", "uninstall")


@pytest.mark.asyncio
async def test_remove_system_package_is_refused(installer, repo, store, install_root):
    _publish(repo, "core", {"1.0.0": {"core.txt": b"core"}}, system=True, files={"core.txt": "remove"})
    await installer.install("core")

    with pytest.raises(SystemPackageError):
        await installer.remove("core")

    assert store.get_states()["core"].status == "installed"
    assert (install_root / "core.txt").exists()
    assert store.get_lock().locked is False


@pytest.mark.asyncio
async def test_remove_system_package_when_unprotected(installer, repo, store):
    _publish(repo, "core", {"1.0.0": {"core.txt": b"core"}}, system=True, files={"core.txt": "remove"})
    await installer.install("core")
    installer.protect_system_packages = False

    result = await installer.remove("core")

    assert result.outcome == "removed"
    assert store.get_states() == {}


@pytest.mark.asyncio
async def test_failed_download_reverts_fresh_install(installer, repo, store):
    data = make_zip({"a.txt": b"1"})
    # Manifest without a published archive: the download answers 404
    repo.publish("tool", {"versions": {"1.0.0": version_entry(data), "latest": alias("1.0.0")}})

    result = await installer.install("tool")

    assert result.outcome == "reverted"
    assert "Failed to download tool 1.0.0" in result.error
    assert "tool" not in store.get_states()
    other = StateStore(store.data_dir)
    other.acquire_lock()
    other.release_lock()


@pytest.mark.asyncio
async def test_failed_download_keeps_previous_state_document(installer, repo, store):
    manifest = _publish(repo, "tool", {"1.0.0": {"a.txt": b"1"}})
    await installer.install("tool")
    before = (store.data_dir / "state.json").read_bytes()

    manifest["versions"]["1.1.0"] = version_entry(make_zip({"a.txt": b"2"}))
    manifest["versions"]["latest"] = alias("1.1.0")
    repo.publish("tool", manifest)
    repo.failing.add("https://repo-a.test/package/general/tool/download/1.1.0")

    result = await installer.install("tool")

    assert result.outcome == "reverted"
    assert (store.data_dir / "state.json").read_bytes() == before
    assert store.get_lock().locked is False


@pytest.mark.asyncio
async def test_dependency_alias_matching_installed_version_is_satisfied(installer, repo, store):
    manifest = _publish(repo, "lib", {"1.0.0": {"lib/a.txt": b"lib1"}})
    manifest["versions"]["stable"] = alias("1.0.0")
    repo.publish("lib", manifest)
    _publish(repo, "app", {"1.0.0": {"app/a.txt": b"app"}}, dependencies={"lib": "stable"})
    await installer.install("lib", "1.0.0")

    result = await installer.install("app")

    assert result.outcome == "installed"
    assert store.get_states()["lib"].version == "1.0.0"
    assert [url.rsplit("/", 3)[-3] for url in repo.downloads()] == ["lib", "app"]
    assert len([url for url in repo.requests if url.endswith("/lib/info")]) == 1


@pytest.mark.asyncio
async def test_remove_uninstalls_node_dependencies_no_longer_used(installer, repo, node):
    _publish(repo, "tool", {"1.0.0": {"tool.txt": b"t"}}, node_dependencies={"left-pad": "1.3.0", "chalk": "5.0.0"})
    _publish(repo, "other", {"1.0.0": {"other.txt": b"o"}}, node_dependencies={"chalk": "5.0.0"})
    await installer.install("tool")
    await installer.install("other")

    await installer.remove("tool")
    assert node.uninstalled == [[NodeDependency(name="left-pad", version="1.3.0")]]

    await installer.remove("other")
    assert node.uninstalled[-1] == [NodeDependency(name="chalk", version="5.0.0")]
