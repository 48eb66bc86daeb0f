"""
Asynchronous key/value persistence backends.

Values are JSON-compatible structures. Backends raise StorageError on any
I/O or service failure; callers decide whether to degrade or propagate.
"""

import asyncio
import json
import os
from copy import deepcopy
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import StorageConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class StorageError(Exception):
    """Custom exception for key/value storage errors."""
    pass


class KeyValueStore:
    """Base interface: asynchronous get/set/delete of JSON-compatible values."""

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def health_check(self) -> bool:
        try:
            await self.get('__health__')
            return True
        except StorageError as e:
            logger.error(f'Storage health check failed: {e}')
            return False


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store, values are deep-copied in and out like a real backend."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = deepcopy(initial) if initial else {}

    async def get(self, key: str) -> Optional[Any]:
        return deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore(KeyValueStore):
    """All keys in a single JSON document on disk, rewritten atomically on each set."""

    def __init__(self, file_path: str):
        self.file_path = file_path
        self._lock = asyncio.Lock()
        logger.info(f'Initialized JSON file storage at: {file_path}')

    def _read_all(self) -> Dict[str, Any]:
        if not os.path.exists(self.file_path):
            return {}
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f'Corrupt storage file {self.file_path}, starting empty: {e}')
            return {}
        except OSError as e:
            raise StorageError(f'Failed to read {self.file_path}: {e}')
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: Dict[str, Any]) -> None:
        tmp_path = f'{self.file_path}.tmp'
        try:
            directory = os.path.dirname(self.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, self.file_path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f'Failed to write {self.file_path}: {e}')

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
        return data.get(key)

    async def set(self, key: str, value: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            data[key] = value
            await asyncio.to_thread(self._write_all, data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read_all)
            if data.pop(key, None) is not None:
                await asyncio.to_thread(self._write_all, data)


class DynamoDBKeyValueStore(KeyValueStore):
    """DynamoDB table with a string partition key `pk` and a JSON string attribute `value`."""

    def __init__(self, table_name: str, region: str, key_prefix: str = '', client: Any = None):
        """
        Initialize DynamoDB storage.

        Args:
            table_name: Existing table name
            region: AWS region of the table
            key_prefix: Prefix applied to every key, lets several users share a table
            client: Pre-built dynamodb client, created from region if None
        """
        self.table_name = table_name
        self.key_prefix = key_prefix
        self.client = client or boto3.client('dynamodb', region_name=region)
        logger.info(f'Initialized DynamoDB storage with table: {table_name}')

    def _key(self, key: str) -> Dict[str, Dict[str, str]]:
        full_key = f'{self.key_prefix}#{key}' if self.key_prefix else key
        return {'pk': {'S': full_key}}

    def _get_sync(self, key: str) -> Optional[Any]:
        try:
            response = self.client.get_item(TableName=self.table_name, Key=self._key(key), ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f'DynamoDB get failed for {key}: {e}')

        item = response.get('Item')
        if not item or 'value' not in item:
            return None
        try:
            return json.loads(item['value']['S'])
        except (KeyError, json.JSONDecodeError) as e:
            logger.warning(f'Corrupt DynamoDB value for {key}: {e}')
            return None

    def _set_sync(self, key: str, value: Any) -> None:
        try:
            body = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(f'Value for {key} is not JSON serializable: {e}')
        try:
            self.client.put_item(TableName=self.table_name, Item={**self._key(key), 'value': {'S': body}})
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f'DynamoDB put failed for {key}: {e}')

    def _delete_sync(self, key: str) -> None:
        try:
            self.client.delete_item(TableName=self.table_name, Key=self._key(key))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f'DynamoDB delete failed for {key}: {e}')

    async def get(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._get_sync, key)

    async def set(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._set_sync, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete_sync, key)


def create_kv_store(storage_config: StorageConfig) -> KeyValueStore:
    """Build the backend named by storage_config.backend."""
    backend = storage_config.backend.lower()
    if backend == 'memory':
        return InMemoryKeyValueStore()
    if backend == 'file':
        return JsonFileKeyValueStore(storage_config.file_path)
    if backend == 'dynamodb':
        return DynamoDBKeyValueStore(storage_config.dynamodb_table, storage_config.region, storage_config.key_prefix)
    raise StorageError(f'Unknown storage backend: {storage_config.backend}')
