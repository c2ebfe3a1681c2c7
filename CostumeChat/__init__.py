"""
   ______          __                        ________          __
  / ____/___  ____/ /___  ______ ___  ___   / ____/ /_  ____ _/ /_
 / /   / __ \/ ___/ __/ / / / __ `__ \/ _ \ / /   / __ \/ __ `/ __/
/ /___/ /_/ (__  ) /_/ /_/ / / / / / /  __// /___/ / / / /_/ / /_
\____/\____/____/\__/\__,_/_/ /_/ /_/\___/ \____/_/ /_/\__,_/\__/

CostumeChat - realtime messaging client for the costume rental marketplace.

Keeps conversations, presence and typing indicators in sync with the
marketplace messaging server over a single websocket per signed-in user.
"""

__version__ = "1.0.0"
