"""
bootstrap.py
------------

Bootstraps the EBS backend from config files, command-line flags and
environment variables, then runs the requested use cases through it.

    python bootstrap.py --root /var/lib/ebs-backend \
        --usecase ebs.volume.create.executor --name vol1 --opt Size=4G

Each --usecase runs with the same --name and --opt options, in the order
given. Without --usecase only the backend info is printed.
"""

import argparse
import os
import sys

from ebs_backend.config import AgentConfig, load_config
from ebs_backend.driver import Request, build_registry
from ebs_backend.errors import EBSError
from ebs_backend.log import buffer_logging, configure_logging
from ebs_backend.runner import UseCaseRunner
from ebs_backend.types import DRIVER_NAME
from ebs_backend.util import parse_kv_pairs


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="EBS backend bootstrapper")

    parser.add_argument("--config", action="append", default=[],
                        help="Path of a JSON config file or directory (repeatable)")

    parser.add_argument("--root", type=str, default=os.getenv("EBS_ROOT"),
                        help="Directory holding the backend's records")

    parser.add_argument("--log-level", type=str, default=os.getenv("EBS_LOG_LEVEL"),
                        help="DEBUG, INFO, WARN or ERROR")

    parser.add_argument("--endpoint", type=str, default=os.getenv("EBS_ENDPOINT"),
                        help="Override the EC2 endpoint URL")

    parser.add_argument("--wait-timeout", type=float, default=None,
                        help="Give up waiting for a state transition after this many seconds")

    parser.add_argument("--usecase", action="append", default=[],
                        help="Executor hint to run (repeatable)")

    parser.add_argument("--name", type=str, default="",
                        help="Volume or snapshot name the use cases act on")

    parser.add_argument("--opt", action="append", default=[],
                        help="Use case option as KEY=VALUE (repeatable)")

    return parser.parse_args(argv)


def build_config(args) -> AgentConfig:
    config = AgentConfig()
    for path in args.config:
        config = config.merge(load_config(path))

    # Flags and environment variables win over config files
    cli = AgentConfig(
        log_level=args.log_level or "INFO",
        root=args.root or config.root,
        endpoint_url=args.endpoint or "",
        wait_timeout=args.wait_timeout,
    )
    return config.merge(cli)


def create_backend(config: AgentConfig):
    client_kwargs = {"wait_timeout": config.wait_timeout}
    if config.endpoint_url:
        client_kwargs["endpoint_url"] = config.endpoint_url

    registry = build_registry()
    backend = registry.get_driver(DRIVER_NAME, config.root, config.driver_options, **client_kwargs)
    print(f"[bootstrap] Created {backend.name()} backend at {os.path.join(config.root, DRIVER_NAME)}")
    return backend


def main(argv=None) -> int:
    args = parse_args(argv)
    pending = buffer_logging()

    try:
        config = build_config(args)
        configure_logging(config.log_level, config.enable_syslog, config.syslog_facility, buffered=pending)
        backend = create_backend(config)
        print(f"[bootstrap] Backend info: {backend.info()}")

        if not args.usecase:
            return 0

        request = Request(name=args.name, options=parse_kv_pairs(args.opt))
        runner = UseCaseRunner(backend, [(hint, request) for hint in args.usecase])
        reports = runner.run()
    except EBSError as e:
        print(f"[bootstrap] {e}", file=sys.stderr)
        return 1

    for report in reports:
        print(f"[bootstrap] {report.usecase}: {report.status} {report.message}")

    return 0 if all(r.success for r in reports) else 1


if __name__ == "__main__":
    sys.exit(main())
