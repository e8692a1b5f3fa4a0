"""
Logging setup and secret masking
"""
import logging
from typing import Any, Dict, Iterable

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

SECRET_KEYS = ('bearerToken', 'token', 'password', 'secret_key', 'secretKey', 'client_secret', 'account_key')

MASK = '********'

_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging once for the test run or a CLI invocation"""
    global _configured
    if _configured:
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # Kubernetes client and urllib3 are very chatty at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('kubernetes').setLevel(logging.WARNING)
    _configured = True


def mask_secrets(values: Any, secret_keys: Iterable[str] = SECRET_KEYS) -> Any:
    """Return a copy of a (nested) values map with secret entries masked"""
    keys = set(secret_keys)
    if isinstance(values, dict):
        masked: Dict[str, Any] = {}
        for key, value in values.items():
            if key in keys and value:
                masked[key] = MASK
            else:
                masked[key] = mask_secrets(value, keys)
        return masked
    if isinstance(values, list):
        return [mask_secrets(v, keys) for v in values]
    return values
