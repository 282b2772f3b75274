from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

import httpx
import uvicorn

from .config import Settings, get_settings
from .core.contract_loader import ContractLoader
from .core.exceptions import ContractAssertionError, ContractEngineError
from .core.registry import ContractRegistry
from .core.stubs import StubGenerator
from .core.testgen import TestGenerator, httpx_sender, render_pytest_module
from .logging_setup import setup_logging
from .main import create_app

logger = logging.getLogger(__name__)


def _load(path: str, settings: Settings) -> ContractRegistry:
    scoped = settings.model_copy(update={"CONTRACTS_PATH": path})
    return ContractLoader(scoped, watch_signals=False).load()


def _import_object(spec: str) -> Any:
    module_name, _, attr = spec.partition(":")
    obj = importlib.import_module(module_name)
    for part in attr.split(".") if attr else []:
        obj = getattr(obj, part)
    return obj() if isinstance(obj, type) else obj


def _write(text: str, output: Optional[str]) -> None:
    if output:
        Path(output).write_text(text, encoding="utf-8")
        logger.info(f"Wrote {output}")
    else:
        sys.stdout.write(text)


def cmd_stubs(args: argparse.Namespace, settings: Settings) -> int:
    registry = _load(args.contracts, settings)
    mappings = StubGenerator().compile(registry).to_mappings()
    _write(json.dumps(mappings, indent=2, ensure_ascii=False) + "\n", args.output)
    return 0


def cmd_generate_tests(args: argparse.Namespace, settings: Settings) -> int:
    registry = _load(args.contracts, settings)
    generator = TestGenerator()
    for group in registry.groups:
        tests = generator.generate(registry.get(group))
        source = render_pytest_module(tests, base_class=args.base_class, group=group)
        if args.output_dir:
            out = Path(args.output_dir) / f"test_{group.replace('/', '_').replace('-', '_')}_contracts.py"
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(source, encoding="utf-8")
            logger.info(f"Generated {len(tests)} tests into {out}")
        else:
            sys.stdout.write(source)
    return 0


def cmd_verify(args: argparse.Namespace, settings: Settings) -> int:
    registry = _load(args.contracts, settings)
    hooks = _import_object(args.hooks) if args.hooks else None
    tests = TestGenerator().generate(list(registry.contracts()))
    failed = 0
    with httpx.Client(base_url=args.base_url, timeout=args.timeout) as client:
        send = httpx_sender(client)
        for test in tests:
            try:
                test.run(send, hooks)
                print(f"PASS {test.contract.name}")
            except ContractAssertionError as e:
                failed += 1
                print(f"FAIL {e}")
    print(f"{len(tests) - failed} passed, {failed} failed")
    return 1 if failed else 0


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    app = create_app(settings=settings.model_copy(update={"CONTRACTS_PATH": args.contracts}))
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="contract-engine", description="Consumer-driven contract stubs and producer tests")
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("stubs", help="Export WireMock mappings for a contract file or directory")
    p.add_argument("contracts")
    p.add_argument("-o", "--output")
    p.set_defaults(func=cmd_stubs)

    p = sub.add_parser("generate-tests", help="Render pytest modules for the producer")
    p.add_argument("contracts")
    p.add_argument("--base-class", required=True, help="package.module:ClassName providing `client` and hooks")
    p.add_argument("-d", "--output-dir")
    p.set_defaults(func=cmd_generate_tests)

    p = sub.add_parser("verify", help="Run contracts against a live producer")
    p.add_argument("contracts")
    p.add_argument("--base-url", required=True)
    p.add_argument("--hooks", help="package.module:object exposing command hooks")
    p.add_argument("--timeout", type=float, default=10.0)
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("serve", help="Run the stub server")
    p.add_argument("contracts")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8080)
    p.set_defaults(func=cmd_serve)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(args.log_level or settings.LOG_LEVEL)
    try:
        return args.func(args, settings)
    except ContractEngineError as e:
        logger.error(f"{type(e).__name__}: {e}", extra={"error": e.to_error_detail().to_dict()})
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
