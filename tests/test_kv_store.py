import asyncio
import json

import pytest
from botocore.exceptions import ClientError

from companion_memory.utils.config import StorageConfig
from companion_memory.utils.kv_store import (DynamoDBKeyValueStore, InMemoryKeyValueStore, JsonFileKeyValueStore,
                                             StorageError, create_kv_store)

from conftest import BrokenStore


def run(coro):
    return asyncio.run(coro)


class FakeDynamoClient:
    """Records calls against a dict keyed by partition key."""

    def __init__(self, fail=False):
        self.items = {}
        self.fail = fail
        self.calls = []

    def _check(self, operation):
        self.calls.append(operation)
        if self.fail:
            raise ClientError({'Error': {'Code': 'ResourceNotFoundException', 'Message': 'Table not found'}}, operation)

    def get_item(self, TableName, Key, ConsistentRead):
        self._check('GetItem')
        item = self.items.get(Key['pk']['S'])
        return {'Item': item} if item else {}

    def put_item(self, TableName, Item):
        self._check('PutItem')
        self.items[Item['pk']['S']] = Item

    def delete_item(self, TableName, Key):
        self._check('DeleteItem')
        self.items.pop(Key['pk']['S'], None)


def storage_config(backend, file_path='companion_memory.json'):
    return StorageConfig(backend=backend, file_path=file_path, dynamodb_table='companion-memory', region='us-east-1',
                         key_prefix='companion')


def test_in_memory_store_copies_values():
    async def scenario():
        store = InMemoryKeyValueStore()
        value = {'memories': [{'id': 'mem-1'}]}
        await store.set('state', value)
        value['memories'].append({'id': 'mem-2'})
        first = await store.get('state')
        first['memories'].clear()
        return await store.get('state')

    assert run(scenario()) == {'memories': [{'id': 'mem-1'}]}


def test_in_memory_delete_and_missing_key():
    async def scenario():
        store = InMemoryKeyValueStore({'a': 1})
        await store.delete('a')
        await store.delete('never-set')
        return await store.get('a')

    assert run(scenario()) is None


def test_json_file_store_persists_between_instances(tmp_path):
    path = str(tmp_path / 'nested' / 'store.json')

    async def scenario():
        await JsonFileKeyValueStore(path).set('memories', [{'id': 'mem-1'}])
        await JsonFileKeyValueStore(path).set('proactive-state', {'session_count': 2})
        reopened = JsonFileKeyValueStore(path)
        return await reopened.get('memories'), await reopened.get('proactive-state')

    memories, state = run(scenario())

    assert memories == [{'id': 'mem-1'}]
    assert state == {'session_count': 2}
    with open(path, encoding='utf-8') as f:
        assert set(json.load(f)) == {'memories', 'proactive-state'}


def test_json_file_store_delete(tmp_path):
    async def scenario():
        store = JsonFileKeyValueStore(str(tmp_path / 'store.json'))
        await store.set('a', 1)
        await store.set('b', 2)
        await store.delete('a')
        return await store.get('a'), await store.get('b')

    assert run(scenario()) == (None, 2)


def test_corrupt_file_reads_as_empty(tmp_path):
    path = tmp_path / 'store.json'
    path.write_text('{"memories": [', encoding='utf-8')

    async def scenario():
        store = JsonFileKeyValueStore(str(path))
        missing = await store.get('memories')
        await store.set('memories', [])
        return missing, await store.get('memories')

    assert run(scenario()) == (None, [])


def test_unreadable_file_raises_storage_error(tmp_path):
    store = JsonFileKeyValueStore(str(tmp_path))

    with pytest.raises(StorageError):
        run(store.get('memories'))


def test_dynamodb_store_round_trip():
    client = FakeDynamoClient()
    store = DynamoDBKeyValueStore('companion-memory', 'us-east-1', key_prefix='user-1', client=client)

    async def scenario():
        await store.set('memories', [{'id': 'mem-1', 'content': 'Café owner'}])
        value = await store.get('memories')
        await store.delete('memories')
        return value, await store.get('memories')

    value, after_delete = run(scenario())

    assert value == [{'id': 'mem-1', 'content': 'Café owner'}]
    assert after_delete is None
    assert client.calls == ['PutItem', 'GetItem', 'DeleteItem', 'GetItem']


def test_dynamodb_keys_are_prefixed():
    client = FakeDynamoClient()
    store = DynamoDBKeyValueStore('companion-memory', 'us-east-1', key_prefix='user-1', client=client)

    run(store.set('memories', []))

    assert list(client.items) == ['user-1#memories']


def test_dynamodb_corrupt_value_reads_as_none():
    client = FakeDynamoClient()
    client.items['memories'] = {'pk': {'S': 'memories'}, 'value': {'S': 'not json'}}
    store = DynamoDBKeyValueStore('companion-memory', 'us-east-1', client=client)

    assert run(store.get('memories')) is None


def test_dynamodb_errors_become_storage_errors():
    store = DynamoDBKeyValueStore('companion-memory', 'us-east-1', client=FakeDynamoClient(fail=True))

    with pytest.raises(StorageError):
        run(store.get('memories'))
    with pytest.raises(StorageError):
        run(store.set('memories', []))


def test_unserializable_value_is_rejected():
    store = DynamoDBKeyValueStore('companion-memory', 'us-east-1', client=FakeDynamoClient())

    with pytest.raises(StorageError):
        run(store.set('memories', {'when': object()}))


def test_health_check():
    assert run(InMemoryKeyValueStore().health_check()) is True
    assert run(BrokenStore().health_check()) is False


def test_backend_factory(tmp_path):
    assert isinstance(create_kv_store(storage_config('memory')), InMemoryKeyValueStore)
    assert isinstance(create_kv_store(storage_config('FILE', str(tmp_path / 'x.json'))), JsonFileKeyValueStore)
    with pytest.raises(StorageError):
        create_kv_store(storage_config('redis'))


def test_undecodable_file_reads_as_empty(tmp_path):
    path = tmp_path / 'store.json'
    path.write_bytes(b'\xff\xfe{"memories": []}')

    assert run(JsonFileKeyValueStore(str(path)).get('memories')) is None
