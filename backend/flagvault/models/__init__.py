from .feature_flags import FeatureFlag, FlagTargetingConfig
