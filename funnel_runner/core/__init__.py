"""Core infrastructure: CLI, config, schema, storage, errors."""

from funnel_runner.core.config import (
    Settings,
    BridgeConfig,
    MediaConfig,
    PresenceConfig,
    StorageConfig,
    load_settings,
    load_funnel,
    render_template,
)
from funnel_runner.core.db import (
    init_db,
    load_data,
    save_data,
    put_media,
    get_media,
    delete_media,
    list_media,
)
from funnel_runner.core.schema import (
    Funnel,
    FunnelStep,
    FunnelRunInput,
    IntegrationSettings,
    LeadCard,
    StepType,
)
