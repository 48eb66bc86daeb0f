"""
MCP Interface Layer using fastmcp, exposing the memory engine to other processes.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from companion_memory.models.core import OperationResult
from companion_memory.services.memory_management import MemoryManagementService
from companion_memory.utils.config import config
from companion_memory.utils.health_check import get_system_info
from companion_memory.utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Companion Memory')
memory_service = MemoryManagementService()


def _respond(operation: str, result: OperationResult) -> Dict[str, Any]:
    if not result.success:
        logger.warning(f'MCP {operation} failed: {result.message}')
    return result.to_dict()


@mcp.tool()
async def get_all_memories() -> Dict[str, Any]:
    """List every stored, unexpired memory.

    Returns:
        Result dict with success, message, cause and data (list of memories)
    """
    return _respond('get_all_memories', await memory_service.get_all_memories())


@mcp.tool()
async def add_memory(content: str,
                     type: str,
                     importance: float = 0.5,
                     confidence: float = 0.8,
                     context: Optional[str] = None,
                     url: Optional[str] = None,
                     expires_at: Optional[str] = None) -> Dict[str, Any]:
    """Store a memory about the user.

    Args:
        content: The fact to remember
        type: identity, preference, skill, project, person, event or opinion
        importance: 0 to 1
        confidence: 0 to 1
        context: Optional context the fact was learned in
        url: Page it was learned on
        expires_at: Optional ISO timestamp after which the memory is deleted

    Returns:
        Result dict whose data is the stored memory
    """
    memory = {
        'content': content,
        'type': type,
        'importance': importance,
        'confidence': confidence,
        'context': context,
        'url': url,
        'expires_at': expires_at
    }
    return _respond('add_memory', await memory_service.add_memory(memory))


@mcp.tool()
async def extract_from_conversation(conversation_id: str,
                                    messages: List[Dict[str, Any]],
                                    url: Optional[str] = None,
                                    force: bool = False) -> Dict[str, Any]:
    """Extract memories from a conversation.

    Args:
        conversation_id: Conversation identifier
        messages: Message dicts with role, content and optional id and ts (ISO timestamp)
        url: Page the conversation happened on
        force: Bypass the idle delay and extraction rate limits

    Returns:
        Result dict whose data holds the stored memories and any generated summary
    """
    return _respond('extract_from_conversation',
                    await memory_service.extract_from_conversation(conversation_id, messages, url=url, force=force))


@mcp.tool()
async def get_proactive_action(context: Optional[Dict[str, Any]] = None, is_session_start: bool = False) -> Dict[str, Any]:
    """Decide whether the companion should say something unprompted.

    Args:
        context: Page dict with url, title, main_content, page_type and topics
        is_session_start: True on the first call of a session

    Returns:
        Result dict whose data is the action (type, message, memory_id, metadata) or null
    """
    return _respond('get_proactive_action',
                    await memory_service.get_proactive_action(context=context, is_session_start=is_session_start))


@mcp.tool()
async def record_feedback(memory_id: str, outcome: str) -> Dict[str, Any]:
    """Record the user's reaction to a proactive message.

    Args:
        memory_id: Memory the message was about
        outcome: engaged, dismissed or ignored

    Returns:
        Result dict with the updated memory and history entry
    """
    return _respond('record_feedback', await memory_service.record_feedback(memory_id, outcome))


@mcp.tool()
async def search_memories(query: str, limit: int = 15, url: Optional[str] = None,
                          scope_to_site: bool = False) -> Dict[str, Any]:
    """Search memories relevant to a query.

    Args:
        query: Natural language query
        limit: Maximum number of results to return (default: 15)
        url: Page the chat happens on
        scope_to_site: Only memories learned on this site, plus identity and preferences

    Returns:
        Result dict with the memories and a prompt-ready context block
    """
    if not query or not query.strip():
        return OperationResult.ok({'memories': [], 'context': ''}).to_dict()
    return _respond('search_memories',
                    await memory_service.search_memories(query, limit=limit, url=url, scope_to_site=scope_to_site))


@mcp.tool()
async def record_memory_usage(memory_ids: List[str]) -> Dict[str, Any]:
    """Mark memories as used in a response."""
    return _respond('record_memory_usage', await memory_service.record_memory_usage(memory_ids))


@mcp.tool()
async def edit_memory(memory_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    """Edit a memory; edited memories are marked as verified by the user."""
    return _respond('edit_memory', await memory_service.edit_memory(memory_id, updates))


@mcp.tool()
async def delete_memory(memory_id: str) -> Dict[str, Any]:
    """Delete a memory."""
    return _respond('delete_memory', await memory_service.delete_memory(memory_id))


@mcp.tool()
async def get_related_conversations(query: Optional[str] = None,
                                    url: Optional[str] = None,
                                    topics: Optional[List[str]] = None,
                                    memory_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Find past conversations related to the current one."""
    return _respond('get_related_conversations',
                    await memory_service.get_related_conversations(query=query, url=url, topics=topics,
                                                                   memory_ids=memory_ids))


@mcp.tool()
async def get_related_memories(memory_id: str, limit: int = 10) -> Dict[str, Any]:
    """Find memories sharing people, projects, skills or technologies with a memory."""
    return _respond('get_related_memories', await memory_service.get_related_memories(memory_id, limit=limit))


@mcp.tool()
async def end_session() -> Dict[str, Any]:
    """Mark the current session as ended."""
    return _respond('end_session', await memory_service.end_session())


@mcp.tool()
async def system_info() -> Dict[str, Any]:
    """Configuration and component health."""
    return await get_system_info()


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
