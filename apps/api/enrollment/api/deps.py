from fastapi import Depends

from enrollment.core.components import Components, build_components
from enrollment.core.settings import Settings, get_settings
from enrollment.core.supabase_rest import SupabaseStore


def get_store(settings: Settings = Depends(get_settings)) -> SupabaseStore:
    return SupabaseStore(settings)


def get_components(
    settings: Settings = Depends(get_settings),
    store: SupabaseStore = Depends(get_store),
) -> Components:
    return build_components(settings, store)
