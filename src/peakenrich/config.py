"""Configuration handling for the peak enrichment pipeline."""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import polars as pl
import tomli
import tomli_w

from .exceptions import PreconditionViolationError

SUPPORTED_GENOMES = ('danRer10', 'dm3', 'dm6', 'hg19', 'hg38', 'mm9', 'mm10', 'rn4', 'rn5', 'rn6')
SUPPORTED_READ_LENGTHS = (24, 36, 40, 50, 75, 100)


class LocusDefinition(str, Enum):
    """Built-in rules for assigning peaks to genes."""

    NEAREST_TSS = 'nearest_tss'
    NEAREST_GENE = 'nearest_gene'
    EXON = 'exon'
    INTRON = 'intron'
    KB1 = '1kb'
    KB5 = '5kb'
    KB10 = '10kb'
    KB1_OUTSIDE = '1kb_outside'
    KB5_OUTSIDE = '5kb_outside'
    KB10_OUTSIDE = '10kb_outside'
    KB1_OUTSIDE_UPSTREAM = '1kb_outside_upstream'
    KB5_OUTSIDE_UPSTREAM = '5kb_outside_upstream'
    KB10_OUTSIDE_UPSTREAM = '10kb_outside_upstream'

    @property
    def window(self) -> int:
        """Window half-width in bp for the kb-based definitions, else 0."""
        prefix = self.value.split('_')[0]
        if prefix.endswith('kb'):
            return int(prefix[:-2]) * 1000
        return 0

    @property
    def is_nearest(self) -> bool:
        """True when every peak goes to exactly one (nearest) gene."""
        return self in (LocusDefinition.NEAREST_TSS, LocusDefinition.NEAREST_GENE) or 'outside' in self.value


class Method(str, Enum):
    """Enrichment test families."""

    CHIPENRICH = 'chipenrich'
    CHIPAPPROX = 'chipapprox'
    POLYENRICH = 'polyenrich'
    POLYAPPROX = 'polyapprox'
    FET = 'fet'

    @property
    def is_count(self) -> bool:
        return self in (Method.POLYENRICH, Method.POLYAPPROX)

    @property
    def short_name(self) -> str:
        """Suffix used for per-method output names in hybrid runs."""
        return {
            Method.CHIPENRICH: 'chip',
            Method.POLYENRICH: 'poly',
        }.get(self, self.value)


class Weighting(str, Enum):
    """Peak weights for count-based tests."""

    SIGNAL_VALUE = 'signalValue'
    LOG_SIGNAL_VALUE = 'logsignalValue'
    MULTI_ASSIGN = 'multiAssign'


class Randomization(str, Enum):
    """Permutations of peak-to-gene assignment used to check calibration."""

    COMPLETE = 'complete'
    BY_LENGTH = 'bylength'
    BY_LOCATION = 'bylocation'


def _to_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise PreconditionViolationError(f"Unsupported {label}: {value!r}. Supported: {allowed}") from None


@dataclass(frozen=True)
class MappabilitySpec:
    """Which mappability correction to apply.

    Exactly one of ``read_length`` or ``custom`` is set, or neither for no correction.
    """

    read_length: Optional[int] = None
    custom: Optional[Union[Path, pl.DataFrame]] = None

    @property
    def enabled(self) -> bool:
        return self.read_length is not None or self.custom is not None

    @classmethod
    def from_value(cls, value) -> 'MappabilitySpec':
        """Build a spec from None, a read length, a file path or a table."""
        if value is None or isinstance(value, MappabilitySpec):
            return value if value is not None else cls()
        if isinstance(value, bool):
            raise PreconditionViolationError(f"Unsupported mappability: {value!r}")
        if isinstance(value, int):
            if value not in SUPPORTED_READ_LENGTHS:
                raise PreconditionViolationError(
                    f"Unsupported read length for mappability: {value}. "
                    f"Supported: {', '.join(map(str, SUPPORTED_READ_LENGTHS))}"
                )
            return cls(read_length=value)
        if isinstance(value, pl.DataFrame):
            return cls(custom=value)
        if isinstance(value, str) and value.isdigit():
            return cls.from_value(int(value))
        path = Path(value)
        if not path.is_file():
            raise PreconditionViolationError(f"Mappability file not found: {path}")
        return cls(custom=path)


def _resolve_locusdef(value) -> Union[LocusDefinition, Path, pl.DataFrame]:
    if isinstance(value, (LocusDefinition, pl.DataFrame)):
        return value
    if isinstance(value, str):
        try:
            return LocusDefinition(value)
        except ValueError:
            pass
    path = Path(value)
    if path.is_file():
        return path
    allowed = ', '.join(member.value for member in LocusDefinition)
    raise PreconditionViolationError(
        f"Unsupported locus definition: {value!r}. Use one of {allowed} or a custom file path"
    )


@dataclass(frozen=True)
class EnrichmentOptions:
    """Options shared by every enrichment run.

    String values are validated and converted to enums once, here, so nothing
    deeper in the pipeline has to re-check them.
    """

    genome: str
    locusdef: Union[LocusDefinition, Path, pl.DataFrame] = LocusDefinition.NEAREST_TSS
    mappability: Any = None
    min_geneset_size: int = 15
    max_geneset_size: int = 2000
    num_peak_threshold: int = 1
    randomization: Optional[Randomization] = None
    n_cores: int = 1
    weighting: Tuple[Weighting, ...] = ()
    seed: Optional[int] = None
    spline_df: int = 5
    randomization_bin_size: int = 50

    def __post_init__(self):
        if self.genome not in SUPPORTED_GENOMES:
            raise PreconditionViolationError(
                f"Unsupported genome: {self.genome!r}. Supported: {', '.join(SUPPORTED_GENOMES)}"
            )
        object.__setattr__(self, 'locusdef', _resolve_locusdef(self.locusdef))
        object.__setattr__(self, 'mappability', MappabilitySpec.from_value(self.mappability))

        if self.randomization is not None:
            object.__setattr__(
                self, 'randomization', _to_enum(Randomization, self.randomization, 'randomization')
            )

        weighting = self.weighting
        if weighting is None:
            weighting = ()
        elif isinstance(weighting, (str, Weighting)):
            weighting = (weighting,)
        object.__setattr__(
            self, 'weighting', tuple(_to_enum(Weighting, w, 'weighting') for w in weighting)
        )

        if self.min_geneset_size < 1 or self.max_geneset_size < self.min_geneset_size:
            raise PreconditionViolationError(
                f"Invalid gene set size bounds: [{self.min_geneset_size}, {self.max_geneset_size}]"
            )
        if self.num_peak_threshold < 1:
            raise PreconditionViolationError("num_peak_threshold must be at least 1")
        if self.n_cores < 1:
            raise PreconditionViolationError("n_cores must be at least 1")
        if self.spline_df < 4:
            raise PreconditionViolationError("spline_df must be at least 4 for a cubic spline")


def parse_methods(methods) -> List[Method]:
    """Convert method names to ``Method`` values."""
    if isinstance(methods, (str, Method)):
        methods = [methods]
    return [_to_enum(Method, m, 'method') for m in methods]


class PipelineConfig:
    """Configuration class for the peak enrichment pipeline, read from TOML."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = Path(config_path)

        try:
            with open(self.config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except Exception as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        required_sections = ['input', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})
        required_input_files = ['peaks_file', 'annotation_file', 'geneset_files']
        missing_files = [key for key in required_input_files if key not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.analysis_params = self.config.get("analysis", {})
        self.output_config = self.config.get("output", {})

    @property
    def geneset_files(self) -> List[str]:
        files = self.input_files['geneset_files']
        return [files] if isinstance(files, str) else list(files)

    @property
    def methods(self) -> List[Method]:
        return parse_methods(self.analysis_params.get('methods', ['chipenrich', 'polyenrich']))

    def options(self) -> EnrichmentOptions:
        """Build validated enrichment options from the [analysis] section."""
        params = self.analysis_params
        if 'genome' not in params:
            raise ValueError("Missing required analysis parameter: genome")

        known = {
            'locusdef', 'mappability', 'min_geneset_size', 'max_geneset_size',
            'num_peak_threshold', 'randomization', 'n_cores', 'weighting', 'seed',
            'spline_df', 'randomization_bin_size',
        }
        kwargs: Dict[str, Any] = {key: params[key] for key in known if key in params}
        return EnrichmentOptions(genome=params['genome'], **kwargs)

    def get_output_path(self) -> Optional[Path]:
        """Get the output directory.

        Returns None when no output directory is configured, in which case
        nothing is written.
        """
        output_dir = self.output_config.get("out_path")
        if output_dir is None:
            return None
        return Path(output_dir)

    @property
    def out_name(self) -> Optional[str]:
        return self.output_config.get("out_name")

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file."""
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
