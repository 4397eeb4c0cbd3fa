"""
SwitchBot Automation - Main Application
FastAPI-based web server hosting the automation scheduler.
"""
import uvicorn
import os
import logging
from logging.handlers import RotatingFileHandler, QueueHandler, QueueListener
import queue
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI

# Import services
from switchbot import build_gateway
from yaml_loader import load_config, get_conf
from modules.automation_api import register_automation_routes
from modules.scheduler import AutomationScheduler
from modules.storage import build_stores


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG = load_config()


# ============================================================================
# LOGGING CONFIGURATION (NON-BLOCKING)
# ============================================================================

log_file = get_conf(CONFIG, 'logging', 'file', 'logs/automation.log')
if os.path.dirname(log_file):
    os.makedirs(os.path.dirname(log_file), exist_ok=True)

# 1. Create a queue for logs
log_queue = queue.Queue(-1)  # Unlimited size

# 2. Setup the actual handlers (File & Console)
file_handler = RotatingFileHandler(log_file, maxBytes=1024*1024, backupCount=3)
console_handler = logging.StreamHandler()

formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')
file_handler.setFormatter(formatter)
console_handler.setFormatter(formatter)

# 3. Create the Listener (Runs in a separate thread)
log_listener = QueueListener(log_queue, file_handler, console_handler)

# 4. Configure the root logger to write to the Queue
root_logger = logging.getLogger()
root_logger.setLevel(get_conf(CONFIG, 'logging', 'level', 'INFO'))

# Remove default handlers to avoid duplication
root_logger.handlers = []
root_logger.addHandler(QueueHandler(log_queue))

# Quieten chatty libraries
logging.getLogger('aiohttp').setLevel(logging.WARNING)

logger = logging.getLogger('main')


# ============================================================================
# SERVICES
# ============================================================================

scheduler: Optional[AutomationScheduler] = None


def build_scheduler(config: dict) -> AutomationScheduler:
    data_dir = get_conf(config, 'storage', 'data_dir', './data')
    rules, variables, history = build_stores(
        data_dir, history_limit=int(get_conf(config, 'storage', 'history_limit', 1000)))
    gateway = build_gateway(config, data_dir)
    return AutomationScheduler(
        rules, variables, history, gateway,
        fast_interval=float(get_conf(config, 'automation', 'fast_interval', 5)),
        slow_interval=float(get_conf(config, 'automation', 'slow_interval', 30)),
    )


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown handling."""
    global scheduler

    # 1. Start the Threaded Log Listener
    log_listener.start()
    logger.info("Starting SwitchBot Automation (Threaded Logging Enabled)...")

    scheduler = build_scheduler(CONFIG)

    if get_conf(CONFIG, 'automation', 'enabled', True):
        await scheduler.start()
        logger.info("🤖 Automation engine running")
    else:
        logger.warning("Automation engine disabled in config; API only")

    yield  # Application runs here

    # Shutdown
    logger.info("Shutting down SwitchBot Automation...")
    await scheduler.stop()
    await scheduler.gateway.close()

    # Stop log listener
    log_listener.stop()


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="SwitchBot Automation",
    description="Rule-based automation for SwitchBot cloud devices",
    version="1.0.0",
    lifespan=lifespan
)

register_automation_routes(app, lambda: scheduler)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        app,
        host=get_conf(CONFIG, 'web', 'host', '0.0.0.0'),
        port=int(get_conf(CONFIG, 'web', 'port', 8000)),
        log_level="info"
    )
