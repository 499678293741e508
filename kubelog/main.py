import argparse
import logging
import sys
from typing import List, Optional

from kubelog.async_loop import launch_in_background_thread
from kubelog.config import Context, KubeConfig
from kubelog.errors import ApiError, ConfigurationError, KubeLogError
from kubelog.facade import SyncLogFacade
from kubelog.log import LogFetcher
from kubelog.model.log_options import LogOptions
from kubelog.tools.logs import configure_logging


class FatalError(Exception):
    pass


def select_context(config: KubeConfig, pattern: Optional[str]) -> Context:
    if pattern is None:
        context = config.get_current_context()
        if context is None:
            raise ConfigurationError("No current-context set, use --context")
        return context

    contexts = config.get_selector().fnmatch_context(pattern)

    if len(contexts) != 1:
        names = [ctx.name for ctx in contexts]
        raise FatalError(f"Need exactly 1 cluster context to run, matched: {names!r}")

    config.set_current_context(contexts[0].name)
    return contexts[0]


def build_options(args: argparse.Namespace) -> LogOptions:
    return LogOptions(
        follow=args.follow or None,
        limit_bytes=args.limit_bytes,
        previous=args.previous or None,
        since_seconds=args.since,
        tail_lines=args.tail,
        timestamps=args.timestamps or None,
    )


def run(args: argparse.Namespace) -> None:
    level = logging.DEBUG if args.logfile else logging.WARNING
    configure_logging(filename=args.logfile, level=level)

    config = KubeConfig.load()
    context = select_context(config, args.context)
    namespace = args.namespace or context.namespace or "default"

    async_loop = launch_in_background_thread()
    try:
        facade = SyncLogFacade(async_loop=async_loop, fetcher=LogFetcher(config))
        facade.stream_logs(
            namespace,
            args.pod,
            args.container,
            sys.stdout.buffer,
            build_options(args),
        )
    finally:
        async_loop.shutdown()


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubelog", description="Stream the logs of a pod container"
    )
    parser.add_argument("pod", help="Name of the pod")
    parser.add_argument(
        "--context",
        dest="context",
        action="store",
        help=(
            "Kube context to use - matched like a filesystem wildcard "
            "(defaults to current-context)"
        ),
    )
    parser.add_argument("-n", "--namespace", dest="namespace", action="store")
    parser.add_argument(
        "-c",
        "--container",
        dest="container",
        action="store",
        required=True,
        help="Name of the container",
    )
    parser.add_argument("-f", "--follow", dest="follow", action="store_true")
    parser.add_argument("--tail", dest="tail", type=int, metavar="LINES")
    parser.add_argument("--since", dest="since", type=int, metavar="SECONDS")
    parser.add_argument("--limit-bytes", dest="limit_bytes", type=int)
    parser.add_argument("--previous", dest="previous", action="store_true")
    parser.add_argument("--timestamps", dest="timestamps", action="store_true")
    parser.add_argument(
        "--logfile", dest="logfile", action="store", help="Write debug logs here"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)

    try:
        run(args)

    except KeyboardInterrupt:
        return 130

    except ApiError as exc:
        print(f"Error from server ({exc.status_code}): {exc.message}", file=sys.stderr)
        return 1

    except (KubeLogError, FatalError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
