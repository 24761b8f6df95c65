import logging

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name="rollout_engine"):
    if name != "rollout_engine" and not name.startswith("rollout_engine."):
        name = f"rollout_engine.{name}"
    return logging.getLogger(name)
