"""
Shared validation for tooth placement and catalog references.

Used by both treatment steps and performed procedures.
"""
from apps.clinical.models import ProcedureCatalog, ToothSurfaceChoices
from apps.clinical.services import MALFORMED_ID_ERRORS
from apps.core.errors import NotFoundError, ValidationError

# Permanent (1-32) and deciduous (51-85) tooth numbering
PERMANENT_TEETH = range(1, 33)
DECIDUOUS_TEETH = range(51, 86)


def is_valid_tooth_number(value) -> bool:
    return value in PERMANENT_TEETH or value in DECIDUOUS_TEETH


def resolve_catalog_entry(catalog_id, require_active=True):
    """Load a procedure catalog entry, or None when no id is given."""
    if not catalog_id:
        return None
    try:
        entry = ProcedureCatalog.objects.get(pk=catalog_id)
    except (ProcedureCatalog.DoesNotExist,) + MALFORMED_ID_ERRORS:
        raise NotFoundError(
            'Procedure catalog entry not found',
            details={'procedure_catalog': str(catalog_id)},
        )
    if require_active and not entry.is_active:
        raise ValidationError(
            f'Procedure "{entry.name}" is inactive',
            details={'procedure_catalog': str(catalog_id)},
        )
    return entry


def validate_tooth_placement(catalog_entry, tooth_number, tooth_surface, field_prefix=''):
    """
    Check tooth_number / tooth_surface against range and catalog applicability.

    Without a catalog entry (free-text service) the placement is only range-checked.
    """
    errors = {}

    if tooth_number is not None and not is_valid_tooth_number(tooth_number):
        errors[f'{field_prefix}tooth_number'] = 'Tooth number must be between 1-32 or 51-85'

    if tooth_surface is not None and tooth_surface not in ToothSurfaceChoices.values:
        errors[f'{field_prefix}tooth_surface'] = f'Unknown tooth surface "{tooth_surface}"'

    if tooth_surface is not None and tooth_number is None:
        errors[f'{field_prefix}tooth_surface'] = 'A tooth surface requires a tooth number'

    if catalog_entry is not None:
        if tooth_number is not None and not catalog_entry.applies_to_tooth:
            errors[f'{field_prefix}tooth_number'] = (
                f'Procedure "{catalog_entry.name}" does not apply to a specific tooth'
            )
        if tooth_surface is not None and not catalog_entry.applies_to_surface:
            errors[f'{field_prefix}tooth_surface'] = (
                f'Procedure "{catalog_entry.name}" does not apply to a tooth surface'
            )

    if errors:
        raise ValidationError('Invalid tooth placement', details=errors)
