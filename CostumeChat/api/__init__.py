from .client import CostumeChatAPIClient

__all__ = ['CostumeChatAPIClient']
