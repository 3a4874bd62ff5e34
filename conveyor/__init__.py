import logging

from conveyor.config import config

logging.basicConfig(
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    level=logging.INFO,
)
if config.debug:
    logging.getLogger('conveyor.collaborators').setLevel(logging.DEBUG)
    logging.getLogger('conveyor.utils').setLevel(logging.DEBUG)
