import asyncio

from companion_memory.utils import health_check
from companion_memory.utils.kv_store import InMemoryKeyValueStore

from conftest import BrokenStore


class StubClient:
    def __init__(self, config, healthy=True):
        self.healthy = healthy

    def health_check(self):
        return self.healthy


def test_system_info_reports_each_component(monkeypatch):
    monkeypatch.setattr(health_check, 'BedrockLLM', StubClient)
    monkeypatch.setattr(health_check, 'BedrockEmbed', lambda config: StubClient(config, healthy=False))
    monkeypatch.setattr(health_check, 'create_kv_store', lambda storage: InMemoryKeyValueStore())

    info = asyncio.run(health_check.get_system_info())

    status = info['health_status']
    assert status['bedrock_llm']['healthy'] is True
    assert status['bedrock_embed']['healthy'] is False
    assert status['storage']['healthy'] is True
    assert info['configuration']['storage_backend'] == health_check.config.storage.backend


def test_component_construction_errors_are_reported(monkeypatch):
    def no_credentials(config):
        raise RuntimeError('no credentials')

    monkeypatch.setattr(health_check, 'BedrockLLM', no_credentials)
    monkeypatch.setattr(health_check, 'BedrockEmbed', StubClient)
    monkeypatch.setattr(health_check, 'create_kv_store', lambda storage: BrokenStore())

    status = asyncio.run(health_check.get_health_status())

    assert status['bedrock_llm'] == {'healthy': False, 'service': 'Amazon Bedrock LLM', 'error': 'no credentials'}
    assert status['bedrock_embed']['healthy'] is True
    assert status['storage']['healthy'] is False
