"""
Griefwatch Domains - One module per detector.

This module contains:
- afk: Players who never move after freeze time
- friendly_fire: Team kills and grouped team damage
- team_flash: Flashbangs that blind teammates
- disconnects: Disconnect / reconnect reconciliation
- inactivity: Mid-round inactivity (experimental)
- body_blocking: Teammate body blocking (experimental)
- objective: Bomb objective sabotage (experimental)
- economy: Buy sabotage (experimental)
"""

__all__: list[str] = []
