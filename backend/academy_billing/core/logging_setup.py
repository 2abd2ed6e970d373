import logging
import os
import sys

from academy_billing.core.config import settings

os.makedirs(settings.log_dir, exist_ok=True)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(os.path.join(settings.log_dir, 'server.log'), encoding='utf-8')
    ]
)

logger = logging.getLogger('academy_billing')
