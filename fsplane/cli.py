from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Callable, Dict

from fsplane.foundation.errors import ControlPlaneError
from fsplane.services.reconciler.planner import plan
from fsplane.services.registry.models import FeatureSetReference
from fsplane.services.registry.seed import load_registry


def _cmd_resolve(args: argparse.Namespace) -> int:
    registry = load_registry(args.registry)
    refs = (
        [FeatureSetReference.parse(args.feature_set)]
        if args.feature_set
        else registry.snapshot().references()
    )
    out = {str(ref): sorted(registry.get_subscribed_stores(ref)) for ref in refs}
    print(json.dumps(out, indent=2, sort_keys=True))
    return 0


def _cmd_plan(args: argparse.Namespace) -> int:
    registry = load_registry(args.registry)
    topology = plan(registry.snapshot())
    out = {
        "version": topology.version,
        "stores": {
            name: {
                "type": job.store_type.value,
                "config_version": job.config_version,
                "feature_sets": sorted(str(r) for r in job.feature_set_refs),
                "sources": list(job.sources),
            }
            for name, job in topology.desired.items()
        },
    }
    print(json.dumps(out, indent=2, sort_keys=True))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fsplane",
        description="Feature store control plane utilities.",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_resolve = sub.add_parser("resolve", help="Show the stores each feature set flows into")
    p_resolve.add_argument("registry", help="Path to registry YAML document")
    p_resolve.add_argument("--feature-set", help="Only resolve this 'project/name' reference")

    p_plan = sub.add_parser("plan", help="Print the desired job topology")
    p_plan.add_argument("registry", help="Path to registry YAML document")

    sub.add_parser("server", help="Run the reconciler and admin API", add_help=False)
    sub.add_parser("metrics", help="Expose Prometheus metrics", add_help=False)
    return parser


_COMMAND_HANDLERS: Dict[str, Callable[[argparse.Namespace], int]] = {
    "resolve": _cmd_resolve,
    "plan": _cmd_plan,
}


def main(argv: list[str] | None = None) -> None:
    raw_argv = list(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # server and metrics own their argument parsing
    if raw_argv and raw_argv[0] == "server":
        from fsplane.services.reconciler.server import main as server_main

        server_main(raw_argv[1:])
        return
    if raw_argv and raw_argv[0] == "metrics":
        from fsplane.services.reconciler.metrics import main as metrics_main

        metrics_main(raw_argv[1:])
        return

    args = _build_parser().parse_args(raw_argv)
    handler = _COMMAND_HANDLERS.get(args.cmd)
    if handler is None:
        raise SystemExit(1)
    try:
        code = handler(args)
    except (ControlPlaneError, FileNotFoundError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)
    if code:
        raise SystemExit(code)


if __name__ == "__main__":  # pragma: no cover - CLI entry
    main()
