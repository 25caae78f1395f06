import sys

from dmarc_report_ingester.app import main


def run():
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    run()
