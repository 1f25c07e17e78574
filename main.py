import sys

from logging_config import setup_logging
import market_maker


def main():
    setup_logging()
    return market_maker.main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(main())
