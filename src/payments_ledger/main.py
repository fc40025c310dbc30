import sys
import logging

from payments_ledger.config import get_settings
from payments_ledger.driver import StreamDriver
from payments_ledger.report import render_accounts


def main():
    if len(sys.argv) != 2:
        print("Usage: payments-ledger <input.csv>", file=sys.stderr)
        sys.exit(1)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    filepath = sys.argv[1]
    driver = StreamDriver(num_workers=settings.num_workers, skip_malformed=settings.skip_malformed)
    try:
        result = driver.process_file(filepath)
    except OSError as e:
        print(f"Cannot read {filepath}: {e}", file=sys.stderr)
        sys.exit(1)

    if result.stream_error is not None and result.stats.decoded == 0:
        print(f"Cannot decode {filepath}: {result.stream_error}", file=sys.stderr)
        sys.exit(1)

    render_accounts(result.accounts, sys.stdout)


if __name__ == "__main__":
    main()
