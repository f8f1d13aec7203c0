from .feature_flags import (
    archive_flag,
    create_flag,
    get_flag_by_id,
    get_flag_by_key,
    get_targeting_config,
    list_flags,
    toggle_targeting_tenant,
    update_flag,
    upsert_targeting_config,
)
