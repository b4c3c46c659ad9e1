#!/usr/bin/python3

import argparse
import logging
import sys

import polyglot as pg


def main() -> None:
    parser = argparse.ArgumentParser(description="Mirror a media folder with hard links, leaving out language specific metadata.")
    parser.add_argument("source", help="Source media folder")
    parser.add_argument("target", help="Mirror folder")
    parser.add_argument("--config", type=str, default=None,
        help="YAML configuration with exclusion lists (defaults to $POLYGLOT_CONFIG)")
    parser.add_argument("--dry-run", action="store_true", help="Show actions only, don't execute them")
    parser.add_argument("--delete", action="store_true", help="Remove stray files from the mirror")
    parser.add_argument("--create", action="store_true", help="Create missing mirror folder")
    parser.add_argument("--verbose", action="store_true", help="Show more information messages")
    parser.add_argument("--debug", action="store_true", help="Show debug messages")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stderr,
        format="%(levelname)s: %(asctime)s -- %(message)s",
    )

    result = 0
    try:
        result = pg.sync(
            args.source,
            args.target,
            dry_run=args.dry_run,
            delete=args.delete,
            create=args.create,
            verbose=args.verbose,
            debug=args.debug,
            config_path=args.config,
        )
    except KeyboardInterrupt:
        logging.info("INTERRUPTED")
        result = 10
    except Exception as exc:
        logging.error("Exception: %s", exc)
        result = 99
    sys.exit(result)


if __name__ == "__main__":
    main()
