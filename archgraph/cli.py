"""
ArchGraph command line.

Usage:
    archgraph --db graph.db submit RELATION_UPSERT '{"fromId": "...", "toId": "...", "type": "call"}'
    archgraph --db graph.db requests --status PENDING
    archgraph --db graph.db approve 3 4 --reviewer alice
    archgraph --db graph.db approve --all --exclude 7
    archgraph --db graph.db rebuild
    archgraph --db graph.db query PATH_DISCOVERY --from urn:svc:a --to urn:svc:c
    archgraph --db graph.db serve --port 8000
"""
import argparse
import json
import os
import sys
from typing import List, Optional

from .contracts.base import ArchGraphError, DEFAULT_WORKSPACE_ID
from .contracts.entities import ChangeRequestStatus, RollupLevel
from .contracts.events import ImpactDirection, QueryParams, QueryScope, QueryType
from .contracts.payloads import normalize_relation_type
from .engine import LOG_LEVEL_ENV, ArchGraphBackend, BackendConfig
from .observability import configure_logging
from .storage import DB_PATH_ENV, StoreConfig
from .api.mapper import map_apply_outcome, map_change_request, map_generation

DEFAULT_DB_PATH = "archgraph.db"


def _print(data):
    print(json.dumps(data, indent=2, sort_keys=True))


def _backend(args) -> ArchGraphBackend:
    config = BackendConfig.from_env()
    config.store = StoreConfig(database_path=args.db)
    return ArchGraphBackend(config)


def cmd_submit(args, backend: ArchGraphBackend):
    payload = json.loads(args.payload)
    request = backend.create_change_request(
        args.workspace, args.request_type, payload, requested_by=args.requested_by,
        dedupe_pending=args.dedupe or None,
    )
    _print(map_change_request(request))


def cmd_requests(args, backend: ArchGraphBackend):
    status = None if args.status.upper() == "ALL" else args.status
    requests = backend.list_change_requests(args.workspace, status=status, limit=args.limit)
    _print([map_change_request(r) for r in requests])


def _apply(args, backend: ArchGraphBackend, status: ChangeRequestStatus) -> int:
    if args.all or len(args.ids) > 1:
        result = backend.apply_bulk(
            args.workspace,
            None if args.all else args.ids,
            status,
            reviewed_by=args.reviewer,
            exclude_ids=args.exclude,
        )
        _print(result.to_dict())
        return 1 if result.failed else 0
    if not args.ids:
        print("error: give request ids or --all", file=sys.stderr)
        return 2
    outcome = backend.apply_change_request(args.workspace, args.ids[0], status, reviewed_by=args.reviewer)
    _print(map_apply_outcome(outcome))
    return 0


def cmd_approve(args, backend: ArchGraphBackend) -> int:
    return _apply(args, backend, ChangeRequestStatus.APPROVED)


def cmd_reject(args, backend: ArchGraphBackend) -> int:
    return _apply(args, backend, ChangeRequestStatus.REJECTED)


def cmd_rebuild(args, backend: ArchGraphBackend):
    report = backend.build(args.workspace)
    _print({
        "workspaceId": report.workspace_id,
        "version": report.version,
        "edgeCounts": {level.value: count for level, count in report.edge_counts},
        "durationMs": round(report.duration_ms, 2),
    })


def cmd_generations(args, backend: ArchGraphBackend):
    _print([map_generation(g) for g in backend.list_generations(args.workspace)])


def cmd_query(args, backend: ArchGraphBackend) -> int:
    params = QueryParams(
        from_id=args.from_id,
        to_id=args.to_id,
        target_id=args.target,
        object_id=args.object,
        direction=ImpactDirection(args.direction),
        max_hops=args.max_hops,
        max_depth=args.max_depth,
        top_k=args.top_k,
    )
    relation_types = None
    if args.relation_types:
        relation_types = tuple(normalize_relation_type(t) for t in args.relation_types)
    scope = QueryScope(
        level=RollupLevel(args.level),
        relation_types=relation_types,
        include_hidden=args.include_hidden,
    )
    result = backend.execute_query(
        QueryType(args.query_type), args.workspace, params, scope, args.generation
    )
    _print(result.to_dict())
    return 0 if result.success else 1


def cmd_serve(args):
    import uvicorn

    os.environ[DB_PATH_ENV] = args.db
    uvicorn.run("archgraph.api.server:app", host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="archgraph", description="Architecture dependency graph")
    parser.add_argument(
        "--db",
        default=os.environ.get(DB_PATH_ENV) or DEFAULT_DB_PATH,
        help="Path to the SQLite database",
    )
    parser.add_argument("--workspace", default=DEFAULT_WORKSPACE_ID, help="Workspace id")
    parser.add_argument("--log-level", default=None, help="Logging level (default: $ARCHGRAPH_LOG_LEVEL or INFO)")

    subparsers = parser.add_subparsers(dest="command")

    submit = subparsers.add_parser("submit", help="Queue a change request")
    submit.add_argument("request_type", help="RELATION_UPSERT, RELATION_DELETE or OBJECT_PATCH")
    submit.add_argument("payload", help="JSON payload")
    submit.add_argument("--requested-by", default=None)
    submit.add_argument(
        "--dedupe", action="store_true", help="Reuse a pending upsert for the same relation"
    )

    requests = subparsers.add_parser("requests", help="List change requests")
    requests.add_argument("--status", default="PENDING", help="PENDING, APPROVED, REJECTED or ALL")
    requests.add_argument("--limit", type=int, default=None)

    for name, help_text in (("approve", "Approve change requests"), ("reject", "Reject change requests")):
        apply_parser = subparsers.add_parser(name, help=help_text)
        apply_parser.add_argument("ids", nargs="*", type=int)
        apply_parser.add_argument("--all", action="store_true", help="Every pending request")
        apply_parser.add_argument("--exclude", nargs="*", type=int, default=[])
        apply_parser.add_argument("--reviewer", default=None)

    subparsers.add_parser("rebuild", help="Rebuild roll-ups")
    subparsers.add_parser("generations", help="List roll-up generations")

    query = subparsers.add_parser("query", help="Run a structural query")
    query.add_argument("query_type", choices=[t.value for t in QueryType])
    query.add_argument("--from", dest="from_id", default=None)
    query.add_argument("--to", dest="to_id", default=None)
    query.add_argument("--target", default=None)
    query.add_argument("--object", default=None)
    query.add_argument("--direction", choices=[d.value for d in ImpactDirection], default="DOWNSTREAM")
    query.add_argument("--level", choices=[lv.value for lv in RollupLevel], default="SERVICE_TO_SERVICE")
    query.add_argument("--relation-types", nargs="*", default=None)
    query.add_argument("--include-hidden", action="store_true")
    query.add_argument("--max-hops", type=int, default=None)
    query.add_argument("--max-depth", type=int, default=None)
    query.add_argument("--top-k", type=int, default=None)
    query.add_argument("--generation", type=int, default=None, help="Pin a generation version")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser


COMMANDS = {
    "submit": cmd_submit,
    "requests": cmd_requests,
    "approve": cmd_approve,
    "reject": cmd_reject,
    "rebuild": cmd_rebuild,
    "generations": cmd_generations,
    "query": cmd_query,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level or os.environ.get(LOG_LEVEL_ENV, "INFO"))

    if args.command == "serve":
        cmd_serve(args)
        return 0
    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 2

    backend = _backend(args)
    try:
        return handler(args, backend) or 0
    except ArchGraphError as exc:
        print(f"error: {exc.reason}: {exc.error.message}", file=sys.stderr)
        return 1
    except json.JSONDecodeError as exc:
        print(f"error: invalid JSON payload: {exc}", file=sys.stderr)
        return 2
    finally:
        backend.close()


if __name__ == "__main__":
    sys.exit(main())
