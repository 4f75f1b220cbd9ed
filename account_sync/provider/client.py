"""
Identity provider account API.

This module implements the five account operations the batch engine consumes
on top of ProviderAPIBase. Request and response bodies use the provider's
snake_case field names.
"""

import logging
from typing import Dict, List, Any, Optional
from urllib.parse import quote

from .base import ProviderAPIBase, ProviderAPIError

logger = logging.getLogger(__name__)


class IdentityProviderClient(ProviderAPIBase):
    """
    Identity provider REST client.

    Handles account creation, partial update, deletion, cursor-paged listing
    and counting.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.cursor_param = config.get('cursor_param', 'after_id')
        logger.info(f"Initialized identity provider client for {self.host}")

    def create_account(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an account.

        Args:
            fields: Creation body, passed through unchanged

        Returns:
            The created account
        """
        return self.request('POST', '/users', body=fields)

    def update_account(self, account_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial update; fields missing from ``fields`` are left untouched.
        """
        return self.request('PATCH', f'/users/{quote(account_id, safe="")}', body=fields)

    def delete_account(self, account_id: str) -> Dict[str, Any]:
        return self.request('DELETE', f'/users/{quote(account_id, safe="")}')

    def list_accounts(self, page_size: int, cursor: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Fetch one page of accounts ordered by id.

        Args:
            page_size: Maximum number of accounts to return
            cursor: Only return accounts whose id sorts after this one

        Returns:
            List of account dictionaries (possibly shorter than page_size)
        """
        params = {'limit': page_size, 'order_by': 'id'}
        if cursor is not None:
            params[self.cursor_param] = cursor
        response = self.request('GET', '/users', params=params)

        # Some deployments wrap lists in {"data": [...]}
        if isinstance(response, dict):
            response = response.get('data', [])
        if not isinstance(response, list):
            raise ProviderAPIError(f"Unexpected account list response from {self.host}")
        return response

    def count_accounts(self) -> int:
        response = self.request('GET', '/users/count')
        if isinstance(response, dict):
            return int(response.get('total_count', response.get('count', 0)))
        return int(response)
