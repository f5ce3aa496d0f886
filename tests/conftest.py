import os

# Воркер при импорте настраивает логирование в файл
os.environ.setdefault("SAVE_QUEUE_LOG_FILE", os.devnull)
