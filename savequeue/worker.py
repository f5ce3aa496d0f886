import os
import logging
from celery import Celery
from celery.signals import worker_process_init

# --- Настройка логирования ---
LOG_FILE = os.getenv("SAVE_QUEUE_LOG_FILE", "save_queue_worker.log")
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://redis:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://redis:6379/0')
# Как часто перезапускать обработку сохранённой очереди (сек)
DRAIN_INTERVAL = float(os.getenv('SAVE_QUEUE_DRAIN_INTERVAL', '300'))

celery_app = Celery(
    'savequeue',
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=['savequeue.tasks.save_products']
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='Europe/Moscow',
    enable_utc=True,
    beat_schedule={
        # Подбираем pending товары, оставшиеся после падения воркера
        'drain-save-queue-every-5-minutes': {
            'task': 'drain_save_queue',
            'schedule': DRAIN_INTERVAL,
        },
    }
)

@worker_process_init.connect
def on_worker_init(**kwargs):
    """Прогреваем кэш цен при старте процесса воркера."""
    from savequeue.tasks.save_products import get_price_cache
    logger.info("Worker process initializing... Loading price cache.")
    get_price_cache()

if __name__ == '__main__':
    celery_app.start()
