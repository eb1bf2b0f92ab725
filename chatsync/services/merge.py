"""Reglas de merge por id para mensajes y conversaciones.

El mismo mensaje puede llegar por la respuesta del envío, por el socket o por
una página del historial, en cualquier orden. Estas funciones son puras: reciben
la secuencia actual y devuelven la nueva, ordenada por (created_at, id).

- Identidad (id, thread_id, sender_id, created_at, scope): gana la primera escritura.
- Campos mutables: gana la versión más alta (max de created/updated/edited/deleted).
- read y delivered solo pasan de False a True; un borrado no se deshace.
- Un registro confirmado por el servidor siempre gana a uno local (pending/failed).
"""
from typing import Dict, Iterable, List, Optional

from chatsync.schemas.models import Conversation, DeliveryState, Message


def _is_local(message: Message) -> bool:
    return message.delivery is not DeliveryState.CONFIRMED


def _rank(message: Message):
    # Desempate determinista para versiones iguales
    return (message.version, message.is_pinned, len(message.reactions), message.content)


def merge_message(existing: Optional[Message], incoming: Message) -> Message:
    if existing is None:
        return incoming
    if _is_local(existing) and not _is_local(incoming):
        return incoming
    if _is_local(incoming) and not _is_local(existing):
        return existing

    newer = incoming if _rank(incoming) > _rank(existing) else existing
    deleted = [m.deleted_at for m in (existing, incoming) if m.deleted_at is not None]
    return newer.model_copy(
        update={
            "id": existing.id,
            "thread_id": existing.thread_id,
            "sender_id": existing.sender_id,
            "created_at": existing.created_at,
            "scope": existing.scope,
            "recipient_id": existing.recipient_id or incoming.recipient_id,
            "read": existing.read or incoming.read,
            "delivered": existing.delivered or incoming.delivered,
            "deleted_at": min(deleted) if deleted else None,
        }
    )


def _matches_pending(local: Message, confirmed: Message) -> bool:
    return (
        _is_local(local)
        and local.id != confirmed.id
        and local.thread_id == confirmed.thread_id
        and local.sender_id == confirmed.sender_id
        and local.content == confirmed.content
    )


def _drop_matching_pending(by_id: Dict[str, Message], confirmed: Message) -> None:
    candidates = [m for m in by_id.values() if _matches_pending(m, confirmed)]
    if candidates:
        oldest = min(candidates, key=lambda m: m.sort_key)
        del by_id[oldest.id]


def sort_messages(messages: Iterable[Message]) -> List[Message]:
    return sorted(messages, key=lambda m: m.sort_key)


def merge_messages(sequence: Iterable[Message], incoming: Iterable[Message]) -> List[Message]:
    by_id: Dict[str, Message] = {m.id: m for m in sequence}
    for message in incoming:
        if message.id not in by_id and not _is_local(message):
            # Eco propio por el socket antes que la respuesta del envío
            _drop_matching_pending(by_id, message)
        by_id[message.id] = merge_message(by_id.get(message.id), message)
    return sort_messages(by_id.values())


def confirm_pending(sequence: Iterable[Message], local_id: str, confirmed: Message) -> List[Message]:
    """Sustituye solo local_id; otros envíos idénticos en vuelo se quedan."""
    by_id: Dict[str, Message] = {m.id: m for m in sequence if m.id != local_id}
    by_id[confirmed.id] = merge_message(by_id.get(confirmed.id), confirmed)
    return sort_messages(by_id.values())


def mark_failed(sequence: Iterable[Message], local_id: str) -> List[Message]:
    return [
        m.model_copy(update={"delivery": DeliveryState.FAILED}) if m.id == local_id and _is_local(m) else m
        for m in sequence
    ]


def mark_read(sequence: Iterable[Message], reader_id: str) -> List[Message]:
    """Marca como leídos los mensajes que el lector recibió (no los que envió)."""
    return [
        m.model_copy(update={"read": True}) if m.sender_id != reader_id and not m.read else m
        for m in sequence
    ]


def touch_conversation(conversation: Conversation, message: Message, count_unread: bool) -> Conversation:
    """Actualiza preview y actividad si el mensaje es más nuevo que lo conocido."""
    update = {}
    last = conversation.last_activity_at
    if last is None or message.created_at >= last:
        update["last_message_preview"] = message.display_content or ""
        update["last_activity_at"] = message.created_at
    if count_unread:
        update["unread_count"] = conversation.unread_count + 1
    return conversation.model_copy(update=update) if update else conversation
