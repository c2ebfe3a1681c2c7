"""
Entry point for CostumeChat.
Connects to the messaging server as a given user and logs everything it pushes.
"""

import argparse
import asyncio

from CostumeChat.config import config
from CostumeChat.core.client.chat_client import ChatClient
from CostumeChat.core.client.utils import constants as c
from CostumeChat.core.logging import auto_configure, get_logger

logger = get_logger("CostumeChat")


def parse(argv=None):
    parser = argparse.ArgumentParser(prog='CostumeChat', description='CostumeChat messaging client')
    subparsers = parser.add_subparsers(dest='command', required=True, help='Available commands')

    listen_parser = subparsers.add_parser('listen', help='Connect and log inbound events')
    listen_parser.add_argument('--user-id', required=True, help='Authenticated user id')
    listen_parser.add_argument('--username', default='', help='Display name sent with the connection')
    listen_parser.add_argument('--url', default=config.SOCKET_URL,
                               help=f'Messaging websocket URL (default: {config.SOCKET_URL})')
    listen_parser.add_argument('--history', metavar='CONVERSATION_ID',
                               help='Load and print one conversation before listening')
    listen_parser.add_argument('--env', default=None, help='Logging profile (default: $COSTUMECHAT_ENV)')

    return parser.parse_args(argv)


async def listen(user_id: str, username: str, url: str, history: str = None) -> None:
    client = ChatClient(url=url)
    client.connection.events.on(c.STATE_CHANGED, lambda connected, error: logger.info(
        "Connection %s%s", "up" if connected else "down", f" ({error})" if error else ""))
    client.connection.events.on(c.MESSAGE_RECEIVED, lambda m: logger.info(
        "[%s] %s: %s", m.conversation_id, m.sender_name or m.sender_id, m.body))
    client.presence.events.on(c.PRESENCE_CHANGED, lambda users: logger.info("%d users online", len(users)))
    client.typing.events.on(c.TYPING_CHANGED, lambda cid, signal: logger.info(
        "[%s] %s", cid, f"{signal.username or signal.user_id} is typing" if signal else "stopped typing"))

    async with client.session(user_id, username):
        if history and await client.load_history(history):
            for message in client.store.get_messages(history):
                logger.info("[%s] %s %s: %s", history, message.timestamp.isoformat(),
                            message.sender_name or message.sender_id, message.body)
        await asyncio.Event().wait()


def main(argv=None):
    args = parse(argv)
    auto_configure(args.env)

    if args.command == 'listen':
        try:
            asyncio.run(listen(args.user_id, args.username, args.url, args.history))
        except KeyboardInterrupt:
            logger.info("Bye!")
    else:
        raise Exception('Unknown command')


if __name__ == '__main__':
    main()
