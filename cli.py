from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Sequence

from modmerger import ModManager, ModMergerError, load_settings, print_conflict_details
from modmerger.load_config import save_deploy_method
from modmerger.logging_utils import log_error, log_info, log_ok, set_verbose
from modmerger.models import DeployMethod
from modmerger.registry import Registry


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Merge game mods by priority into one output tree and deploy it "
            "by copy, hard link or symbolic link."
        )
    )
    parser.add_argument(
        "--config-path",
        type=Path,
        default=Path("config.toml"),
        help="Path to the program configuration TOML file.",
    )
    parser.add_argument("--platform", help="Platform to work on instead of the configured one.")
    parser.add_argument("--profile", help="Profile to work on instead of the configured one.")
    parser.add_argument(
        "--verbose",
        action="store_true",
        default=False,
        help="Print debug messages.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    package = commands.add_parser("package", help="Build a mod package from a mod folder.")
    package.add_argument("source", type=Path, help="Folder with meta.toml, content/ and aoc/.")
    package.add_argument("output", type=Path, help="Package file to write.")

    install = commands.add_parser("install", help="Install a package into the profile.")
    install.add_argument("package", type=Path)
    install.add_argument("--priority", type=int, help="Priority slot; defaults to the top.")
    install.add_argument("--option", action="append", dest="options", help="Option folder to enable.")

    uninstall = commands.add_parser("uninstall", help="Remove a mod from the profile.")
    uninstall.add_argument("mod", help="Mod name or id.")

    commands.add_parser("list-profiles", help="List the profiles of the platform.")

    for name, text in (("enable", "Enable a mod."), ("disable", "Disable a mod.")):
        toggle = commands.add_parser(name, help=text)
        toggle.add_argument("mod", help="Mod name or id.")

    reorder = commands.add_parser("reorder", help="Move a mod to a new priority.")
    reorder.add_argument("mod", help="Mod name or id.")
    reorder.add_argument("priority", type=int)

    options = commands.add_parser("options", help="Replace the option selection of a mod.")
    options.add_argument("mod", help="Mod name or id.")
    options.add_argument("selected", nargs="*", help="Option folders to enable.")

    apply = commands.add_parser("apply", help="Merge pending changes into the merge store.")
    apply.add_argument("--refresh", action="store_true", help="Re-merge everything, ignoring caches.")

    commands.add_parser("deploy", help="Write merged output to the deployment folder.")

    mode = commands.add_parser("mode", help="Switch the deployment method and redeploy.")
    mode.add_argument("method", choices=[method.value for method in DeployMethod])

    report = commands.add_parser("report", help="Show mods sharing paths and export an Excel report.")
    report.add_argument("--export-path", type=Path, default=Path(""), help="Where to save the report.")

    launch = commands.add_parser("launch", help="Start the configured emulator or game executable.")
    launch.add_argument("--dry-run", action="store_true", help="Only print the command.")

    return parser.parse_args(argv)


def list_profiles(args: argparse.Namespace) -> None:
    settings = load_settings(args.config_path.expanduser())
    platform = settings.platform_settings(args.platform)
    registry = Registry(settings.platform_root(platform.name), platform.name)
    names = registry.profile_names()
    if not names:
        log_info(f"No profiles on {platform.name} yet.")
    for name in names:
        profile = registry.profile(name)
        marker = "*" if name == (args.profile or settings.profile) else " "
        log_info(f"{marker} {name}: {len(profile.slots)} mod(s)")


def run(args: argparse.Namespace) -> None:
    if args.command == "list-profiles":
        list_profiles(args)
        return

    config_path = args.config_path.expanduser()
    settings = load_settings(config_path)
    manager = ModManager(settings, platform=args.platform, profile=args.profile)

    if args.command == "package":
        manager.package(args.source.expanduser(), args.output.expanduser())
    elif args.command == "install":
        entry = manager.install(args.package.expanduser(), args.priority, args.options)
        log_ok(f"Installed {entry.name} at priority {entry.priority}")
    elif args.command == "uninstall":
        manager.uninstall(args.mod)
    elif args.command in ("enable", "disable"):
        manager.set_enabled(args.mod, args.command == "enable")
    elif args.command == "reorder":
        manager.reorder(args.mod, args.priority)
    elif args.command == "options":
        manager.set_options(args.mod, args.selected)
    elif args.command == "apply":
        result = manager.apply(refresh=args.refresh)
        if result.errors:
            raise ModMergerError(f"{len(result.errors)} file(s) failed to merge")
    elif args.command == "deploy":
        manager.deploy()
    elif args.command == "mode":
        method = DeployMethod(args.method)
        manager.set_deploy_method(method)
        if config_path.exists():
            save_deploy_method(config_path, manager.platform.name, method)
    elif args.command == "report":
        conflicts = manager.conflicts()
        print_conflict_details(conflicts)
        export_path = args.export_path
        if not export_path == Path(""):
            if export_path.suffix.lower() != ".xlsx":
                export_path = export_path / "mod_report.xlsx"
            manager.report(export_path)
    elif args.command == "launch":
        manager.launch(dry_run=args.dry_run)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    set_verbose(args.verbose)
    try:
        run(args)
    except (ModMergerError, ValueError) as exc:
        log_error(str(exc))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
