from .config_loader import config, Config, SectionProxy

__all__ = ['config', 'Config', 'SectionProxy']
