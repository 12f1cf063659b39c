"""
Clinic staff accounts and roles.

A staff member logs in with email and holds one or more roles. Clinical
endpoints never look at Django groups or model permissions; they only
check ``User.role_names`` against the role sets defined here.
"""
import uuid
from django.db import models
from django.contrib.auth.models import AbstractBaseUser, BaseUserManager, PermissionsMixin


class RoleChoices(models.TextChoices):
    """Clinic roles"""
    ADMIN = 'admin', 'Admin'
    ODONT = 'odont', 'Odontologist'
    RECEP = 'recep', 'Reception'


ROLE_DESCRIPTIONS = {
    RoleChoices.ADMIN: 'Clinic administration; full clinical access',
    RoleChoices.ODONT: 'Treating dentist; records and changes clinical data',
    RoleChoices.RECEP: 'Front desk; reads clinical data for scheduling',
}

# Roles allowed to mutate clinical data
CLINICAL_WRITE_ROLES = frozenset({RoleChoices.ADMIN, RoleChoices.ODONT})

# Roles allowed to read clinical data
CLINICAL_READ_ROLES = CLINICAL_WRITE_ROLES | {RoleChoices.RECEP}


class StaffManager(BaseUserManager):

    def create_user(self, email, password=None, **extra_fields):
        if not email:
            raise ValueError('Staff accounts need an email')
        user = self.model(email=self.normalize_email(email), **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, password=None, **extra_fields):
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        return self.create_user(email, password, **extra_fields)


class User(AbstractBaseUser, PermissionsMixin):
    """
    Clinic staff member.

    ``license_number`` is the professional registration of a treating
    dentist; it is blank for reception and admin staff.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    email = models.EmailField(unique=True, max_length=255)
    first_name = models.CharField(max_length=150, blank=True)
    last_name = models.CharField(max_length=150, blank=True)
    license_number = models.CharField(max_length=50, blank=True)
    is_active = models.BooleanField(default=True)
    is_staff = models.BooleanField(default=False)  # Django admin access
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = StaffManager()

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = []

    class Meta:
        db_table = 'staff_user'
        verbose_name = 'Staff member'
        verbose_name_plural = 'Staff'
        ordering = ['email']

    def __str__(self):
        return self.email

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip() or self.email

    @property
    def role_names(self):
        """Role names currently granted to this user."""
        return set(self.user_roles.values_list('role__name', flat=True))

    def has_any_role(self, roles):
        return bool(self.role_names & set(roles))


class Role(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=20, unique=True, choices=RoleChoices.choices)
    description = models.CharField(max_length=200, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'staff_role'
        ordering = ['name']

    def __str__(self):
        return self.get_name_display()


class UserRole(models.Model):
    """Grant of one role to one staff member."""
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='user_roles')
    role = models.ForeignKey(Role, on_delete=models.CASCADE, related_name='grants')
    granted_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'staff_user_role'
        constraints = [
            models.UniqueConstraint(fields=['user', 'role'], name='uniq_staff_user_role'),
        ]

    def __str__(self):
        return f"{self.user.email}: {self.role.name}"
