import logging
import sys

from pydantic_settings import CliApp

from tile_aligner.aligner import Aligner
from tile_aligner.parameters import AlignmentParameters

logger = logging.getLogger(__name__)


def main(args: list[str] | None = None) -> None:
    if args is None:
        args = sys.argv[1:]
    params = CliApp.run(AlignmentParameters, cli_args=args)
    log_level = logging.DEBUG if params.verbose else logging.INFO
    logging.basicConfig(level=log_level)
    try:
        Aligner(params).run()
    except Exception:
        logger.exception("Alignment failed")
        raise


if __name__ == "__main__":
    main(sys.argv[1:])
