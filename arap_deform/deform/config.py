from enum import Enum
from dataclasses import dataclass, fields, replace
from typing import List, Optional
from omegaconf import OmegaConf
from omegaconf.errors import ConfigKeyError, ValidationError

from ..errors import ARAPInputError


class ARAPEnergy(str, Enum):
    # rotations at vertices, acting on incident edges [Sorkine and Alexa 2007]
    SPOKES = 'spokes'
    # rotations at triangles/tets, acting on their own edges [Liu et al. 2008, Chao et al. 2010]
    ELEMENTS = 'elements'
    # rotations at vertices, acting on incident edges and the opposite edges of incident elements
    SPOKES_AND_RIMS = 'spokes-and-rims'


def parse_energy(energy) -> ARAPEnergy:
    if isinstance(energy, ARAPEnergy):
        return energy
    try:
        return ARAPEnergy(energy)
    except ValueError:
        options = ', '.join(e.value for e in ARAPEnergy)
        raise ARAPInputError(f'unsupported energy {energy!r}, expected one of: {options}') from None


@dataclass
class ARAPConfig:
    energy: str = 'spokes'

    # stop once no coordinate moves by more than tol * average edge length
    tol: float = 1e-3
    max_iter: int = 10

    # implicit dynamics, see ARAPSolver
    dynamic: bool = False
    time_step: float = 1.0

    tikhonov: float = 0.0

    # 2D parameterization of a 3D triangle mesh, elements energy only
    flat: bool = False
    # pin farthest points per axis instead of user constraints
    remove_rigid: bool = False

    allow_flips: bool = False
    num_workers: int = 1
    verbose: bool = False

    def validate(self):
        energy = parse_energy(self.energy)
        if self.flat and energy != ARAPEnergy.ELEMENTS:
            raise ARAPInputError('flat only makes sense with elements energy')
        if self.max_iter < 1:
            raise ARAPInputError(f'max_iter must be positive, got {self.max_iter}')
        if self.tol < 0:
            raise ARAPInputError(f'tol must be non-negative, got {self.tol}')
        if self.time_step <= 0:
            raise ARAPInputError(f'time_step must be positive, got {self.time_step}')
        if self.tikhonov < 0:
            raise ARAPInputError(f'tikhonov must be non-negative, got {self.tikhonov}')
        return self


def make_arap_config(config: Optional[ARAPConfig] = None, **kwargs) -> ARAPConfig:
    """
    Copy of `config` (or the defaults) with the fields in kwargs replaced.
    """
    known = {f.name for f in fields(ARAPConfig)}
    unknown = set(kwargs) - known
    if unknown:
        raise ARAPInputError(f'unsupported parameter(s): {", ".join(sorted(unknown))}')

    if isinstance(kwargs.get('energy'), ARAPEnergy):
        kwargs['energy'] = kwargs['energy'].value
    if config is not None and isinstance(config.energy, ARAPEnergy):
        config = replace(config, energy=config.energy.value)

    base = OmegaConf.structured(config if config is not None else ARAPConfig)
    try:
        merged = OmegaConf.merge(base, kwargs)
    except ValidationError as e:
        raise ARAPInputError(str(e)) from e
    return OmegaConf.to_object(merged).validate()


def load_arap_config(path: str, overrides: Optional[List[str]] = None) -> ARAPConfig:
    """
    path: yaml file holding a subset of the ARAPConfig fields
    overrides: dotlist, e.g. ['energy=elements', 'max_iter=50']
    """
    schema = OmegaConf.structured(ARAPConfig)
    try:
        config = OmegaConf.merge(schema, OmegaConf.load(path))
        if overrides:
            config = OmegaConf.merge(config, OmegaConf.from_dotlist(overrides))
    except (ValidationError, ConfigKeyError) as e:
        raise ARAPInputError(str(e)) from e
    return OmegaConf.to_object(config).validate()
