from .api_resource import ApiResourceHandler

__all__ = ["ApiResourceHandler"]
