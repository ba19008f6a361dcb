"""Entry point: python -m noona_deploy <verb> [services...]"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from noona_deploy.deploy.manager import DeployManager
from noona_deploy.infrastructure.config import SERVICES
from noona_deploy.infrastructure.logger import logger
from noona_deploy.reporting import ConsoleReporter

SERVICE_VERBS = ("build", "push", "pull", "start", "clean")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="noona-deploy", description="Noona stack deployment")
    sub = parser.add_subparsers(dest="verb", required=True)

    for verb in SERVICE_VERBS:
        cmd = sub.add_parser(verb, help=f"{verb} services")
        cmd.add_argument("services", nargs="*", default=["all"], help=f"services ({', '.join(SERVICES)} or all)")
        if verb == "build":
            cmd.add_argument("--no-cache", action="store_true", help="Build without the layer cache")
            cmd.add_argument("--workers", type=int, help="Worker threads for the build pool")
            cmd.add_argument("--subprocesses", type=int, help="Subprocesses per worker")
        if verb == "start":
            cmd.add_argument("--debug", choices=("false", "true", "super"), help="DEBUG level")
            cmd.add_argument("--boot-mode", choices=("minimal", "super"), help="Boot mode")
            cmd.add_argument("--docker-socket", help="Host runtime socket to hand to the orchestrator")
            cmd.add_argument("--no-socket-bind", action="store_true", help="Do not bind the host runtime socket")

    sub.add_parser("stop", help="Stop all managed containers")
    delete = sub.add_parser("delete", help="Delete every managed container, image, volume and network")
    delete.add_argument("--yes", action="store_true", help="Confirm the deletion")
    listing = sub.add_parser("list", help="List services, containers and lifecycle history")
    listing.add_argument("--history", action="store_true", help="Include lifecycle history")

    settings = sub.add_parser("settings", help="Show or update deployment settings")
    settings.add_argument("--set", metavar="JSON", help="Settings update as a JSON object")
    return parser


async def main(args: argparse.Namespace) -> bool:
    manager = DeployManager(reporter=ConsoleReporter())
    try:
        if args.verb == "build":
            concurrency = {"workerThreads": args.workers, "subprocessesPerWorker": args.subprocesses}
            return (await manager.build(args.services, use_no_cache=args.no_cache, concurrency=concurrency)).ok
        if args.verb == "push":
            return (await manager.push(args.services)).ok
        if args.verb == "pull":
            return (await manager.pull(args.services)).ok
        if args.verb == "start":
            result = await manager.start(
                args.services,
                debug_level=args.debug,
                boot_mode=args.boot_mode,
                host_docker_socket_override=args.docker_socket,
                bind_host_docker_socket=not args.no_socket_bind,
            )
            return result.ok
        if args.verb == "clean":
            return (await manager.clean(args.services)).ok
        if args.verb == "stop":
            return (await manager.stop_all()).ok
        if args.verb == "delete":
            return (await manager.delete_all(confirm=args.yes)).ok
        if args.verb == "list":
            listing = await manager.list_services(include_containers=True, include_history=args.history)
            payload = {
                "services": listing.services,
                "containers": [c.model_dump(by_alias=True) for c in listing.containers or []],
                "history": [e.model_dump() for e in listing.history or []],
                "errors": listing.errors,
            }
            print(json.dumps(payload, indent=2))
            return listing.ok
        if args.verb == "settings":
            current = manager.update_settings(json.loads(args.set)) if args.set else manager.fetch_settings()
            print(json.dumps(current.to_json_dict(), indent=2))
            return True
        return False
    finally:
        await manager.aclose()


def run() -> None:
    args = build_parser().parse_args()
    try:
        ok = asyncio.run(main(args))
    except KeyboardInterrupt:
        ok = False
    except ValueError as exc:
        logger.error("Invalid input", error=str(exc))
        ok = False
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    run()
