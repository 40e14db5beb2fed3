"""
API Module - HTTP services for the Range Server and the Fetcher
"""

from .rest import create_server_app, create_fetcher_app, run_api_server

__all__ = ['create_server_app', 'create_fetcher_app', 'run_api_server']
