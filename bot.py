#!/usr/bin/env python3
"""
Telegram Subscription Bot - Entry Point
Точка входа для запуска бота
"""

from subscription_bot.main import main
import asyncio

if __name__ == "__main__":
    asyncio.run(main())
