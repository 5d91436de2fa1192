import logging


class EntityLoggingAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return '[%s] %s' % (self.extra['entity'], msg), kwargs


def getLogger(module_name=None):
    """
    Returns a logger appropriate for use in the mirror modules.
    Modules should request a logger using their __name__
    """
    logger_name = 'mirror'

    if module_name:
        logger_name = '{}.{}'.format(logger_name, module_name)

    return logging.getLogger(logger_name)


def entity_logger(logger: logging.Logger, entity: str) -> EntityLoggingAdapter:
    """Wraps a logger so every message is prefixed with the entity (e.g. "mattermost:10.3.1") being processed"""
    return EntityLoggingAdapter(logger, {'entity': entity})
