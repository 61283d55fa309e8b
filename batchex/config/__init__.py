from batchex.config.batchex_config import BatchExConfig, setup_logging

__all__ = ['BatchExConfig', 'setup_logging']
