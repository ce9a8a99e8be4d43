import argparse
import asyncio
import sys

from featurepkg import __version__
from featurepkg.exceptions import AppBaseError, ResourceNotFoundError
from featurepkg.logger import get_logger
from featurepkg.models.state import RepositorySource
from featurepkg.services.packages import PackageInstaller, StateStore, get_installer

logger = get_logger(__name__)

BRANCH_ACTIONS = {
    "add-branch": RepositorySource.add_branch,
    "remove-branch": RepositorySource.remove_branch,
    "activate": RepositorySource.activate_branch,
    "deactivate": RepositorySource.deactivate_branch,
}


def run_install(installer: PackageInstaller, name: str, version: str, chain: bool) -> int:
    result = asyncio.run(installer.install(name, version, force_chain=chain))
    if result.outcome == "installed":
        print(f"Installed {name} {result.version}")
    elif result.outcome == "already_up_to_date":
        print(f"Newest version of {name} ({result.version}) already installed")
    else:
        print(f"Installation of {name} failed and was reverted: {result.error}", file=sys.stderr)
    return 0 if result.ok else 1


def run_remove(installer: PackageInstaller, name: str) -> int:
    result = asyncio.run(installer.remove(name))
    if result.outcome == "not_installed":
        print(f"Package {name} not installed")
    else:
        print(f"Package {name} removed.")
    return 0


def run_list_installed(installer: PackageInstaller) -> int:
    for name in installer.list_installed():
        print(name)
    return 0


def run_sources(store: StateStore, action: str, url: str | None, branch: str | None) -> int:
    if action == "list":
        for source in store.get_sources():
            active = set(source.active_branches)
            branches = ", ".join(f"{b}{'*' if b in active else ''}" for b in source.branches)
            print(f"{source.url} [{branches}]")
        return 0

    store.acquire_lock()
    try:
        sources = store.get_sources()
        source = next((s for s in sources if s.url.rstrip("/") == (url or "").rstrip("/")), None)
        if source is None:
            raise ResourceNotFoundError("sources.not_found", url=url)
        BRANCH_ACTIONS[action](source, branch)
        store.set_sources(sources)
    finally:
        store.release_lock()

    logger.info(f"Source {url}: {action} {branch}")
    return 0


def main() -> None:
    """Main entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        description="featurepkg - optional feature package manager",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  featurepkg install analytics              # Install the latest version
  featurepkg install analytics 1.2.0        # Install a specific version
  featurepkg remove analytics
  featurepkg sources activate https://repo.example.org/ experimental
        """,
    )
    parser.add_argument("--version", action="version", version=f"featurepkg {__version__}")

    commands = parser.add_subparsers(dest="command", required=True)

    install = commands.add_parser("install", help="Install or upgrade a package")
    install.add_argument("name")
    install.add_argument("version", nargs="?", default="latest")
    install.add_argument("--chain", action="store_true", help="Install every intermediate version in order")

    remove = commands.add_parser("remove", help="Remove an installed package")
    remove.add_argument("name")

    commands.add_parser("list-installed", help="List installed packages")

    sources = commands.add_parser("sources", help="Inspect or change repository sources")
    sources.add_argument("action", choices=["list", *BRANCH_ACTIONS])
    sources.add_argument("url", nargs="?")
    sources.add_argument("branch", nargs="?")

    args = parser.parse_args()
    if args.command == "sources" and args.action != "list" and not (args.url and args.branch):
        parser.error(f"sources {args.action} requires URL and BRANCH")

    installer = get_installer()
    try:
        if args.command == "install":
            code = run_install(installer, args.name, args.version, args.chain)
        elif args.command == "remove":
            code = run_remove(installer, args.name)
        elif args.command == "list-installed":
            code = run_list_installed(installer)
        else:
            code = run_sources(installer.store, args.action, args.url, args.branch)
    except AppBaseError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
