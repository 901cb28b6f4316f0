"""ambit command line.

    ambit create <network> [--org ORG] [--region R] [--tag TAG] [--manual] [--no-auto-approve]
    ambit deploy <app>.<network> [--image IMG [--main-port P] | --config PATH] [--region R] [-y]
    ambit destroy network <network> [-y]
    ambit destroy app <app>.<network> [-y]
    ambit share <network> <member>...
    ambit status [<network>]
    ambit list [<network>]
    ambit doctor [--network N] [--app APP.NETWORK]
"""
from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

from .credentials import CredentialStore, CredentialStoreError, is_api_key
from .discovery import describe_network, discover_routers, find_router_app, list_workload_apps_on_network
from .doctor import Doctor
from .machine import RunReport
from .naming import AppNameError, split_app_target
from .providers.fly import FlyctlProvider, FlyError
from .providers.tailscale import TailscaleApiProvider, TailscaleError
from .settings import DEFAULT_REGION, LOG_LEVEL, TAILSCALE_API_KEY_PREFIX
from .workflows import (
    CreateNetworkContext,
    DeployAppContext,
    DeployConfigError,
    DestroyAppContext,
    DestroyNetworkContext,
    ShareContext,
    create_network,
    create_summary,
    deploy_app,
    deploy_summary,
    destroy_app,
    destroy_app_summary,
    destroy_network,
    destroy_network_summary,
    grant_network_access,
    parse_members,
    resolve_config_mode,
    resolve_image_mode,
    share_summary,
)

logger = logging.getLogger("ambit")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2
EXIT_UNSAFE = 3


class CliError(RuntimeError):
    pass


def _emit(payload: Any) -> None:
    if dataclasses.is_dataclass(payload):
        payload = dataclasses.asdict(payload)
    print(json.dumps(payload, indent=2, default=str))


def _prompt(question: str) -> bool:
    try:
        answer = input(f"{question} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def resolve_org(fly: FlyctlProvider, org: Optional[str]) -> str:
    if org:
        return org
    orgs = fly.list_orgs()
    if len(orgs) == 1:
        return next(iter(orgs))
    if "personal" in orgs:
        return "personal"
    raise CliError(f"Multiple Fly organizations found ({', '.join(sorted(orgs))}). Pass --org")


def _tailscale_key(api_key: Optional[str] = None) -> str:
    key = api_key or CredentialStore().get_tailscale_api_key()
    if not key:
        raise CliError("Tailscale API Key Required. Run 'ambit create' with --api-key or set TAILSCALE_API_KEY")
    return key


def _session(args: argparse.Namespace, *, api_key: Optional[str] = None) -> Tuple[FlyctlProvider, TailscaleApiProvider, str]:
    fly = FlyctlProvider()
    fly.ensure_installed()
    tailscale = TailscaleApiProvider(_tailscale_key(api_key))
    email = fly.login()
    logger.info("Authenticated with Fly as %s", email)
    return fly, tailscale, resolve_org(fly, getattr(args, "org", None))


def _finish(report: RunReport, summary: Dict[str, Any]) -> int:
    if report.ok:
        if report.skipped:
            summary["skipped"] = list(report.skipped)
        _emit(summary)
        return EXIT_OK
    step = report.step
    if step.kind == "cancelled":
        logger.info("Cancelled")
        return EXIT_CANCELLED
    logger.error("%s", step.error)
    if step.detail:
        logger.error("  %s", step.detail)
    return EXIT_FAILED


def cmd_create(args: argparse.Namespace) -> int:
    api_key = args.api_key or CredentialStore().get_tailscale_api_key()
    if not api_key:
        raise CliError("--api-key Is Required (API access token, tskey-api-...)")
    if not is_api_key(api_key):
        raise CliError(f"Invalid Token Format. Expected '{TAILSCALE_API_KEY_PREFIX}...' (API Access Token, Not Auth Key)")
    fly, tailscale, org = _session(args, api_key=api_key)
    if not tailscale.validate_key():
        raise CliError("Failed to Validate Tailscale API Access Token")
    CredentialStore().set_tailscale_api_key(api_key)

    ctx = CreateNetworkContext(
        fly=fly,
        tailscale=tailscale,
        network=args.network,
        org=org,
        region=args.region,
        tag=args.tag or "",
        should_approve=not args.manual or not args.no_auto_approve,
    )
    return _finish(create_network(ctx, manual=args.manual), create_summary(ctx))


def cmd_deploy(args: argparse.Namespace) -> int:
    app, network = split_app_target(args.target, args.network or "")
    if args.image and args.config:
        raise CliError("--image and --config Are Mutually Exclusive")
    fly, _, org = _session(args)
    if args.image:
        deploy_config = resolve_image_mode(args.image, args.main_port)
    else:
        deploy_config = resolve_config_mode(args.config)
    ctx = DeployAppContext(
        fly=fly,
        app=app,
        network=network,
        org=org,
        deploy_config=deploy_config,
        region=args.region,
        yes=args.yes,
        confirm=_prompt,
    )
    status = _finish(deploy_app(ctx), deploy_summary(ctx))
    if ctx.audit and ctx.audit.has_issues:
        for warning in ctx.audit.warnings:
            logger.warning("%s", warning)
    if status == EXIT_OK and ctx.audit and ctx.audit.public_ips_released:
        logger.error("Deploy allocated %s public IP(s) before the audit released them", ctx.audit.public_ips_released)
        return EXIT_UNSAFE
    return status


def cmd_destroy_network(args: argparse.Namespace) -> int:
    fly, tailscale, org = _session(args)
    ctx = DestroyNetworkContext(fly=fly, tailscale=tailscale, network=args.network, org=org, yes=args.yes, confirm=_prompt)
    return _finish(destroy_network(ctx), destroy_network_summary(ctx))


def cmd_destroy_app(args: argparse.Namespace) -> int:
    app, network = split_app_target(args.target, args.network or "")
    fly, _, org = _session(args)
    ctx = DestroyAppContext(fly=fly, app=app, network=network, org=org, yes=args.yes, confirm=_prompt)
    return _finish(destroy_app(ctx), destroy_app_summary(ctx))


def cmd_share(args: argparse.Namespace) -> int:
    members, errors = parse_members(args.members)
    if errors:
        raise CliError("Invalid members:\n  " + "\n  ".join(errors))
    fly, tailscale, org = _session(args)
    ctx = ShareContext(fly=fly, tailscale=tailscale, network=args.network, org=org, members=members)
    step = grant_network_access(ctx)
    return _finish(RunReport(step=step), share_summary(ctx))


def cmd_status(args: argparse.Namespace) -> int:
    fly, tailscale, org = _session(args)
    if args.network:
        view = describe_network(fly, tailscale, org, args.network)
        if not view:
            raise CliError(f"No Router Found for Network '{args.network}'")
        _emit(view)
        return EXIT_OK
    _emit([dataclasses.asdict(view) for view in discover_routers(fly, tailscale, org)])
    return EXIT_OK


def cmd_list(args: argparse.Namespace) -> int:
    fly, tailscale, org = _session(args)
    if args.network:
        if not find_router_app(fly, org, args.network):
            raise CliError(f"No Network Found: '{args.network}'")
        apps = list_workload_apps_on_network(fly, org, args.network)
        _emit({"network": args.network, "apps": [{"app_name": a.app_name, "status": a.status} for a in apps]})
        return EXIT_OK
    routers = discover_routers(fly, tailscale, org)
    _emit(
        [
            {
                "network": view.router.network,
                "app_name": view.router.app_name,
                "state": view.machine.state if view.machine else None,
                "tag": view.tag,
                "online": view.tailscale.online if view.tailscale else None,
            }
            for view in routers
        ]
    )
    return EXIT_OK


def cmd_doctor(args: argparse.Namespace) -> int:
    fly, tailscale, org = _session(args)
    doctor = Doctor(fly=fly, tailscale=tailscale, org=org)
    doctor.check_local()
    if args.app:
        app, network = split_app_target(args.app, args.network or "")
        doctor.check_app(app, network)
    else:
        doctor.check_network(args.network)
    _emit({"checks": [dataclasses.asdict(result) for result in doctor.results], "issues": doctor.issues})
    return EXIT_OK if doctor.issues == 0 else EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ambit", description="Private Fly.io networks bridged into a tailnet")
    parser.add_argument("--log-level", default=LOG_LEVEL)
    sub = parser.add_subparsers(dest="command", required=True)

    def _with_org(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--org", default=None, help="Fly.io organization slug")
        return p

    create = _with_org(sub.add_parser("create", help="Create a router for a network"))
    create.add_argument("network")
    create.add_argument("--region", default=DEFAULT_REGION)
    create.add_argument("--api-key", default=None)
    create.add_argument("--tag", default=None)
    create.add_argument("--manual", action="store_true", help="Skip automatic ACL configuration")
    create.add_argument("--no-auto-approve", action="store_true")
    create.set_defaults(handler=cmd_create)

    deploy = _with_org(sub.add_parser("deploy", help="Deploy a workload onto a network"))
    deploy.add_argument("target", help="app.network")
    deploy.add_argument("--network", default=None)
    deploy.add_argument("--image", default=None)
    deploy.add_argument("--config", default=None)
    deploy.add_argument("--main-port", default="80")
    deploy.add_argument("--region", default=None)
    deploy.add_argument("-y", "--yes", action="store_true")
    deploy.set_defaults(handler=cmd_deploy)

    destroy = sub.add_parser("destroy", help="Tear down a network or workload")
    destroy_sub = destroy.add_subparsers(dest="kind", required=True)
    destroy_net = _with_org(destroy_sub.add_parser("network"))
    destroy_net.add_argument("network")
    destroy_net.add_argument("-y", "--yes", action="store_true")
    destroy_net.set_defaults(handler=cmd_destroy_network)
    destroy_app_parser = _with_org(destroy_sub.add_parser("app"))
    destroy_app_parser.add_argument("target", help="app.network")
    destroy_app_parser.add_argument("--network", default=None)
    destroy_app_parser.add_argument("-y", "--yes", action="store_true")
    destroy_app_parser.set_defaults(handler=cmd_destroy_app)

    share = _with_org(sub.add_parser("share", help="Grant tailnet members access to a network"))
    share.add_argument("network")
    share.add_argument("members", nargs="+")
    share.set_defaults(handler=cmd_share)

    status = _with_org(sub.add_parser("status", help="Show router and network state"))
    status.add_argument("network", nargs="?", default=None)
    status.set_defaults(handler=cmd_status)

    listing = _with_org(sub.add_parser("list", help="List networks, or apps on a network"))
    listing.add_argument("network", nargs="?", default=None)
    listing.set_defaults(handler=cmd_list)

    doctor = _with_org(sub.add_parser("doctor", help="Check local client and router health"))
    doctor.add_argument("--network", default=None)
    doctor.add_argument("--app", default=None, help="app.network")
    doctor.set_defaults(handler=cmd_doctor)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        return args.handler(args)
    except (CliError, AppNameError, DeployConfigError, CredentialStoreError) as exc:
        logger.error("%s", exc)
        for detail in getattr(exc, "errors", []):
            logger.error("  %s", detail)
        return EXIT_FAILED
    except (FlyError, TailscaleError) as exc:
        logger.error("%s", exc)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
