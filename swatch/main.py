"""CLI entry point — dispatches swatch subcommands."""
import argparse
import sys

from swatch.errors import ConfigError


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="swatch",
        description="NAS design-asset agents: scan, fingerprint, preview and report to the catalog",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    # swatch run
    p_run = sub.add_parser("run", help="Run the bridge agent (heartbeat + scans)")
    p_run.add_argument("--debug", action="store_true",
                       help="Debug logging and per-request RPC log")

    # swatch scan
    p_scan = sub.add_parser("scan", help="Run one scan session in the foreground")
    p_scan.add_argument("roots", nargs="*",
                        help="Scan roots (default: configured roots)")
    p_scan.add_argument("--session-id", dest="session_id", default=None,
                        help="Session id to report under (resumes its checkpoint)")
    p_scan.add_argument("--debug", action="store_true",
                        help="Debug logging and per-request RPC log")

    # swatch render-agent
    p_render = sub.add_parser("render-agent", help="Run the remote render agent")
    p_render.add_argument("--poll-interval", dest="poll_interval", type=int, default=None,
                          help="Seconds between claim attempts (default: from config, 30)")
    p_render.add_argument("--debug", action="store_true",
                          help="Debug logging and per-request RPC log")

    # swatch fingerprint
    p_fp = sub.add_parser("fingerprint", help="Print quick fingerprints for files")
    p_fp.add_argument("paths", nargs="+", help="Files to fingerprint")

    # swatch config
    sub.add_parser("config", help="Interactively configure server URL and scan roots")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        if args.command == "run":
            from swatch.commands.run import cmd_run
            cmd_run(args)
        elif args.command == "scan":
            from swatch.commands.scan import cmd_scan
            cmd_scan(args)
        elif args.command == "render-agent":
            from swatch.commands.render_agent import cmd_render_agent
            cmd_render_agent(args)
        elif args.command == "fingerprint":
            from swatch.commands.fingerprint import cmd_fingerprint
            cmd_fingerprint(args)
        elif args.command == "config":
            from swatch.commands.config import cmd_config
            cmd_config(args)
        else:
            parser.print_help()
            sys.exit(1)
    except ConfigError as e:
        print(f"swatch: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        sys.stderr.write("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
