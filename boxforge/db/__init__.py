from boxforge.db.config import ConfigBase, sample_id
from boxforge.db.data_store import (
    DEFAULT_CONFIG_FILE,
    DataStore,
    get_default_config_path,
    load_data_store,
    save_data_store,
)
from boxforge.db.plugins import Plugin, PluginTrigger
from boxforge.db.profiles import Profile, ProfileManager, load_profile_file
from boxforge.db.subscriptions import Subscription, SubscriptionManager

__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ConfigBase",
    "DataStore",
    "Plugin",
    "PluginTrigger",
    "Profile",
    "ProfileManager",
    "Subscription",
    "SubscriptionManager",
    "get_default_config_path",
    "load_data_store",
    "load_profile_file",
    "sample_id",
    "save_data_store",
]
