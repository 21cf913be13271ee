"""Shared utilities for the reclaim engine."""

from .logger import bind_wallet, get_logger, log_operation_event, reset_wallet, short_address

__all__ = ['bind_wallet', 'get_logger', 'log_operation_event', 'reset_wallet', 'short_address']
