from django.conf import settings
from django.core.validators import MinValueValidator
from django.db import models


class Building(models.Model):
    """A managed building; the billing scope for fee plans and provider configs."""

    name = models.CharField(max_length=255)
    address = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=120, blank=True)
    manager = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='managed_buildings',
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'buildings'
        ordering = ['name']

    def __str__(self):
        return self.name


class Unit(models.Model):
    """A billable apartment/unit inside a building."""

    building = models.ForeignKey(Building, on_delete=models.CASCADE, related_name='units')
    unit_number = models.CharField(max_length=20)
    floor = models.IntegerField(null=True, blank=True)
    size_sqm = models.DecimalField(
        max_digits=8,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(0)],
    )
    owner_name = models.CharField(max_length=255, blank=True)
    tenant_user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='units',
        help_text='Resident who pays the unit charges',
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'units'
        ordering = ['building_id', 'unit_number']
        constraints = [
            models.UniqueConstraint(fields=['building', 'unit_number'], name='uniq_unit_number_per_building'),
        ]

    def __str__(self):
        return f"{self.building.name} / {self.unit_number}"
