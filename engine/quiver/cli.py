from __future__ import annotations
import argparse
import json
import sys
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional
import uvicorn
from .settings import Settings
from .logging_setup import setup_logging, get_logger
from .errors import QuiverError
from .orchestrator import Orchestrator
from .api import create_app

log = get_logger("quiver.cli")


def _parse_vars(pairs) -> dict:
    out = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise SystemExit(f"invalid --var {pair!r}, expected NAME=VALUE")
        k, v = pair.split("=", 1)
        out[k] = v
    return out


def _dump(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def api_base_url(settings: Settings, override: Optional[str] = None) -> str:
    if override:
        return override.rstrip("/")
    host = settings.api_host
    if host in ("", "0.0.0.0", "::"):
        host = "127.0.0.1"
    return f"http://{host}:{settings.api_port}"


def stop_via_api(base_url: str, name: str, graceful: bool = True,
                 timeout: Optional[float] = None, request_timeout: float = 60.0) -> int:
    """
    Stop requests go to the running API server: processes are tracked in
    the memory of the process that started them.
    """
    params = {"graceful": "true" if graceful else "false"}
    if timeout is not None:
        params["timeout"] = str(timeout)
    url = f"{base_url}/arrows/{urllib.parse.quote(name, safe='')}/stop?{urllib.parse.urlencode(params)}"
    req = urllib.request.Request(url, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=request_timeout) as resp:
            body = json.loads(resp.read() or b"{}")
    except urllib.error.HTTPError as e:
        try:
            detail = json.loads(e.read() or b"{}").get("detail", e.reason)
        except ValueError:
            detail = e.reason
        log.error("stop %s failed: HTTP %s %s", name, e.code, detail)
        print(f"error: {detail}", file=sys.stderr)
        return 1
    except (urllib.error.URLError, OSError) as e:
        log.error("stop %s: API at %s unreachable: %s", name, base_url, e)
        print(f"error: cannot reach the quiver API at {base_url} ({e}); is `quiver api` running?", file=sys.stderr)
        return 1
    _dump(body)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="quiver")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("install", help="Fetch an arrow (name or repo@name) and run its install method")
    p.add_argument("name")
    p.add_argument("--var", action="append", metavar="NAME=VALUE")

    p = sub.add_parser("plan", help="Print what install would do as JSON and exit")
    p.add_argument("name")
    p.add_argument("--var", action="append", metavar="NAME=VALUE")

    p = sub.add_parser("uninstall", help="Remove an installed arrow")
    p.add_argument("name")

    p = sub.add_parser("execute", help="Run the execute method in the foreground")
    p.add_argument("name")
    p.add_argument("--var", action="append", metavar="NAME=VALUE")

    p = sub.add_parser("stop", help="Ask the running API server to stop the processes of an arrow")
    p.add_argument("name")
    p.add_argument("--force", action="store_true", help="Kill immediately instead of SIGTERM first")
    p.add_argument("--timeout", type=float, default=None)
    p.add_argument("--api", default=None, metavar="URL",
                   help="Base URL of the quiver API (default: from QUIVER_API_HOST/QUIVER_API_PORT)")

    p = sub.add_parser("update", help="Update an arrow to the repository version")
    p.add_argument("name")

    p = sub.add_parser("validate", help="Validate an installed arrow")
    p.add_argument("name")

    p = sub.add_parser("status", help="Show status of an installed arrow")
    p.add_argument("name")

    p = sub.add_parser("deps", help="Print the dependency tree of an installed arrow")
    p.add_argument("name")

    sub.add_parser("list", help="List installed arrows")

    p = sub.add_parser("search", help="Search configured repositories")
    p.add_argument("query")

    api_p = sub.add_parser("api", help="Run REST API (FastAPI)")
    api_p.add_argument("--host", default=None)
    api_p.add_argument("--port", type=int, default=None)

    args = parser.parse_args(argv)
    settings = Settings()
    setup_logging(settings)

    if args.cmd == "api":
        app = create_app(settings)
        uvicorn.run(app, host=args.host or settings.api_host, port=args.port or settings.api_port,
                    log_level=settings.log_level.lower())
        return 0

    if args.cmd == "stop":
        return stop_via_api(api_base_url(settings, args.api), args.name,
                            graceful=not args.force, timeout=args.timeout)

    orch = Orchestrator(settings)
    orch.initialize()
    try:
        return _dispatch(orch, args)
    except QuiverError as e:
        log.error("%s failed: %s", args.cmd, e)
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        orch.shutdown()


def _dispatch(orch: Orchestrator, args) -> int:
    if args.cmd == "install":
        pkg = orch.install(args.name, _parse_vars(args.var))
        _dump(pkg.model_dump(mode="json"))
        return 0

    if args.cmd == "plan":
        plan = orch.plan_install(args.name, _parse_vars(args.var)).to_dict()
        _dump(plan)
        return 0 if plan.get("ok", True) else 1

    if args.cmd == "uninstall":
        orphaned = orch.uninstall(args.name)
        if orphaned:
            print("no longer needed: " + ", ".join(orphaned))
        return 0

    if args.cmd == "execute":
        status = orch.execute(args.name, _parse_vars(args.var))
        _dump(status.model_dump(mode="json"))
        return 0

    if args.cmd == "update":
        _dump(orch.update(args.name).model_dump(mode="json"))
        return 0

    if args.cmd == "validate":
        _dump(orch.validate(args.name))
        return 0

    if args.cmd == "status":
        _dump(orch.get_status(args.name))
        return 0

    if args.cmd == "deps":
        _dump(orch.get_dependency_tree(args.name))
        return 0

    if args.cmd == "list":
        _dump({name: pkg.model_dump(mode="json") for name, pkg in orch.list_installed().items()})
        return 0

    if args.cmd == "search":
        _dump([r.to_dict() for r in orch.search(args.query)])
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
