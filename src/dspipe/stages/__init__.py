"""Pipeline stages and the kind-to-class registry."""

from .adaptive import LmsFilterStage, LmsParams, RlsFilterStage, RlsParams
from .base import Stage, StageContext, StageKind
from .channels import (
    ChannelMergeStage,
    ChannelSelectorStage,
    ChannelSelectStage,
    MergeParams,
    RoutingParams,
    SelectorParams,
    SnrParams,
    SnrStage,
)
from .features import (
    ClipDetectionStage,
    DifferentiatorStage,
    FeatureWindowParams,
    IntegratorParams,
    IntegratorStage,
    PeakDetectionParams,
    PeakDetectionStage,
    SlopeSignChangeStage,
    ThresholdParams,
    WaveformLengthStage,
    WillisonAmplitudeStage,
)
from .filtering import FilterParams, FilterStage
from .regression import LinearRegressionStage, RegressionParams
from .resampling import (
    DecimateStage,
    FactorParams,
    InterpolateStage,
    ResampleParams,
    ResampleStage,
)
from .smoothing import CmaParams, CumulativeMovingAverageStage, EmaParams, ExponentialMovingAverageStage
from .statistics import (
    AmplifyParams,
    AmplifyStage,
    MeanAbsoluteValueStage,
    MovingAverageStage,
    RectifyParams,
    RectifyStage,
    RmsStage,
    SquareStage,
    VarianceStage,
    ZScoreNormalizeStage,
    ZScoreParams,
)
from .transforms import (
    ConvolutionParams,
    ConvolutionStage,
    HilbertEnvelopeStage,
    HilbertParams,
    WaveletParams,
    WaveletTransformStage,
)
from ..models import StageParams
from ..windowing import WindowParams

STAGE_TYPES: dict[StageKind, tuple[type[Stage], type[StageParams]]] = {
    StageKind.MOVING_AVERAGE: (MovingAverageStage, WindowParams),
    StageKind.RMS: (RmsStage, WindowParams),
    StageKind.RECTIFY: (RectifyStage, RectifyParams),
    StageKind.VARIANCE: (VarianceStage, WindowParams),
    StageKind.Z_SCORE_NORMALIZE: (ZScoreNormalizeStage, ZScoreParams),
    StageKind.MEAN_ABSOLUTE_VALUE: (MeanAbsoluteValueStage, WindowParams),
    StageKind.WAVEFORM_LENGTH: (WaveformLengthStage, FeatureWindowParams),
    StageKind.SLOPE_SIGN_CHANGE: (SlopeSignChangeStage, FeatureWindowParams),
    StageKind.WILLISON_AMPLITUDE: (WillisonAmplitudeStage, FeatureWindowParams),
    StageKind.DIFFERENTIATOR: (DifferentiatorStage, StageParams),
    StageKind.INTEGRATOR: (IntegratorStage, IntegratorParams),
    StageKind.CLIP_DETECTION: (ClipDetectionStage, ThresholdParams),
    StageKind.PEAK_DETECTION: (PeakDetectionStage, PeakDetectionParams),
    StageKind.FILTER: (FilterStage, FilterParams),
    StageKind.LMS_FILTER: (LmsFilterStage, LmsParams),
    StageKind.RLS_FILTER: (RlsFilterStage, RlsParams),
    StageKind.INTERPOLATE: (InterpolateStage, FactorParams),
    StageKind.DECIMATE: (DecimateStage, FactorParams),
    StageKind.RESAMPLE: (ResampleStage, ResampleParams),
    StageKind.CONVOLUTION: (ConvolutionStage, ConvolutionParams),
    StageKind.WAVELET_TRANSFORM: (WaveletTransformStage, WaveletParams),
    StageKind.HILBERT_ENVELOPE: (HilbertEnvelopeStage, HilbertParams),
    StageKind.LINEAR_REGRESSION_SLOPE: (LinearRegressionStage, RegressionParams),
    StageKind.LINEAR_REGRESSION_INTERCEPT: (LinearRegressionStage, RegressionParams),
    StageKind.LINEAR_REGRESSION_RESIDUALS: (LinearRegressionStage, RegressionParams),
    StageKind.LINEAR_REGRESSION_PREDICTIONS: (LinearRegressionStage, RegressionParams),
    StageKind.CHANNEL_SELECT: (ChannelSelectStage, RoutingParams),
    StageKind.CHANNEL_SELECTOR: (ChannelSelectorStage, SelectorParams),
    StageKind.CHANNEL_MERGE: (ChannelMergeStage, MergeParams),
    StageKind.AMPLIFY: (AmplifyStage, AmplifyParams),
    StageKind.SQUARE: (SquareStage, StageParams),
    StageKind.EXPONENTIAL_MOVING_AVERAGE: (ExponentialMovingAverageStage, EmaParams),
    StageKind.CUMULATIVE_MOVING_AVERAGE: (CumulativeMovingAverageStage, CmaParams),
    StageKind.SNR: (SnrStage, SnrParams),
}

__all__ = [
    "STAGE_TYPES",
    "Stage",
    "StageContext",
    "StageKind",
    "StageParams",
    "MovingAverageStage",
    "RmsStage",
    "RectifyStage",
    "VarianceStage",
    "ZScoreNormalizeStage",
    "MeanAbsoluteValueStage",
    "WaveformLengthStage",
    "SlopeSignChangeStage",
    "WillisonAmplitudeStage",
    "DifferentiatorStage",
    "IntegratorStage",
    "ClipDetectionStage",
    "PeakDetectionStage",
    "FilterStage",
    "LmsFilterStage",
    "RlsFilterStage",
    "InterpolateStage",
    "DecimateStage",
    "ResampleStage",
    "ConvolutionStage",
    "WaveletTransformStage",
    "HilbertEnvelopeStage",
    "LinearRegressionStage",
    "ChannelSelectStage",
    "ChannelSelectorStage",
    "ChannelMergeStage",
    "AmplifyStage",
    "SquareStage",
    "ExponentialMovingAverageStage",
    "CumulativeMovingAverageStage",
    "SnrStage",
]
