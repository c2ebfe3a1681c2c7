from .message.protocol import DeliveryStatus, Message, MessageKind, TypingSignal

__all__ = ['Message', 'MessageKind', 'DeliveryStatus', 'TypingSignal']
