"""
Database models for the MedScan training service.

Models
------
Dataset      – A labelled image collection laid out on disk by split/class.
TrainingJob  – One submitted training run and its lifecycle.
MLModel      – Catalog entry for a trained artefact usable by inference.

Job lifecycle
-------------
::

    pending → preparing → training → completed
       │          │           │
       └──────────┴───────────┴──→ failed

``completed`` and ``failed`` are terminal.  Every transition goes
through :meth:`TrainingJob.transition` so the timestamps stay consistent
with the status.
"""

from __future__ import annotations

from pathlib import Path

from django.db import models
from django.db.models import F
from django.utils import timezone

from training.config import datasets_root

IMG_EXTS = frozenset({".jpg", ".jpeg", ".png"})


def _iso(value):
    return value.isoformat() if value else None


# ── Datasets ────────────────────────────────────────────────────────────────

class Dataset(models.Model):
    """A labelled image dataset.

    The images live on disk under ``root/{train,validation}/<class>/``.
    ``classes`` is the ordered class list; a class's index is its label
    and its output channel in any network trained on this dataset.

    Attributes:
        name:          Unique human-readable name.
        imaging_type:  Modality of the images (xray, mri, ...).
        classes:       Ordered ``[{"name": str, "count": int}, ...]``.
        path:          Root directory; blank means the default location.
        status:        Only ``ready`` datasets accept training jobs.
    """

    IMAGING_TYPES = [
        ('xray', 'X-ray'),
        ('mri', 'MRI'),
        ('ct', 'CT'),
        ('ultrasound', 'Ultrasound'),
        ('other', 'Other'),
    ]

    STATUS_CHOICES = [
        ('creating', 'Creating'),
        ('ready', 'Ready'),
        ('updating', 'Updating'),
        ('error', 'Error'),
    ]

    name = models.CharField(max_length=200, unique=True)
    description = models.TextField(blank=True, default='')
    imaging_type = models.CharField(max_length=20, choices=IMAGING_TYPES, default='other')
    classes = models.JSONField(default=list, blank=True)

    total_samples = models.PositiveIntegerField(default=0)
    train_samples = models.PositiveIntegerField(default=0)
    val_samples = models.PositiveIntegerField(default=0)

    path = models.CharField(
        max_length=500, blank=True, default='',
        help_text='Dataset root on disk. Blank → <DATA_ROOT>/datasets/<id>.',
    )
    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default='creating', db_index=True,
    )

    created_by = models.CharField(max_length=150, blank=True, default='')
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'datasets'
        ordering = ['name']

    def __str__(self) -> str:
        return f"{self.name} ({self.status})"

    @property
    def class_names(self) -> list[str]:
        return [c["name"] for c in self.classes or []]

    @property
    def root(self) -> Path:
        if self.path:
            return Path(self.path)
        return datasets_root() / str(self.pk)

    def refresh_counts(self) -> None:
        """Recount images per class and split from the on-disk tree."""
        train_total = val_total = 0
        refreshed = []
        for name in self.class_names:
            train_n = _count_images(self.root / "train" / name)
            val_n = _count_images(self.root / "validation" / name)
            train_total += train_n
            val_total += val_n
            refreshed.append({"name": name, "count": train_n + val_n})

        self.classes = refreshed
        self.train_samples = train_total
        self.val_samples = val_total
        self.total_samples = train_total + val_total
        self.save(update_fields=[
            'classes', 'train_samples', 'val_samples', 'total_samples', 'updated_at',
        ])

    def to_dict(self) -> dict:
        return {
            "id": self.pk,
            "name": self.name,
            "description": self.description,
            "type": self.imaging_type,
            "classes": self.classes or [],
            "totalSamples": self.total_samples,
            "trainSamples": self.train_samples,
            "valSamples": self.val_samples,
            "path": str(self.root),
            "status": self.status,
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
        }


def _count_images(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    return sum(
        1 for f in directory.iterdir()
        if f.is_file() and f.suffix.lower() in IMG_EXTS
    )


# ── Model catalog ───────────────────────────────────────────────────────────

class MLModel(models.Model):
    """Catalog entry for a trained network artefact.

    ``class_names[i]`` is the label of output channel ``i``; the list
    length always matches the stored network's output dimension.
    ``performance`` values are percentages in ``[0, 100]``.
    """

    MODEL_TYPES = [
        ('classification', 'Classification'),
        ('detection', 'Detection'),
        ('segmentation', 'Segmentation'),
        ('prediction', 'Prediction'),
    ]

    STATUS_CHOICES = [
        ('active', 'Active'),
        ('testing', 'Testing'),
        ('inactive', 'Inactive'),
        ('archived', 'Archived'),
    ]

    name = models.CharField(max_length=200)
    version = models.CharField(max_length=50)
    description = models.TextField(blank=True, default='')
    model_type = models.CharField(max_length=20, choices=MODEL_TYPES, default='classification')
    architecture = models.CharField(max_length=20, blank=True, default='')

    applicable_body_parts = models.JSONField(default=list, blank=True)
    applicable_imaging_types = models.JSONField(default=list, blank=True)
    class_names = models.JSONField(default=list)

    input_width = models.PositiveIntegerField(default=224)
    input_height = models.PositiveIntegerField(default=224)
    input_channels = models.PositiveSmallIntegerField(default=3)
    preprocessing_steps = models.JSONField(default=list, blank=True)

    performance = models.JSONField(default=dict, blank=True)
    trained_on = models.JSONField(default=dict, blank=True)

    artifact_path = models.CharField(max_length=500)
    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default='testing', db_index=True,
    )
    created_by = models.CharField(max_length=150, blank=True, default='')
    training_job_id = models.BigIntegerField(
        null=True, blank=True,
        help_text='Job that produced this entry; kept when the job record is deleted.',
    )

    usage_count = models.PositiveIntegerField(default=0)
    last_used = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'ml_models'
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['name', 'version'], name='uq_model_name_version'),
        ]
        indexes = [
            models.Index(fields=['model_type', 'status'], name='idx_model_type_status'),
        ]

    def __str__(self) -> str:
        return f"{self.name} v{self.version} ({self.status})"

    @property
    def input_shape(self) -> dict:
        return {
            "width": self.input_width,
            "height": self.input_height,
            "channels": self.input_channels,
        }

    def record_usage(self, count: int = 1) -> None:
        """Atomically bump the usage counter and stamp ``last_used``."""
        now = timezone.now()
        MLModel.objects.filter(pk=self.pk).update(
            usage_count=F('usage_count') + count, last_used=now,
        )
        self.refresh_from_db(fields=['usage_count', 'last_used'])

    def to_dict(self) -> dict:
        return {
            "id": self.pk,
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "type": self.model_type,
            "architecture": self.architecture,
            "applicableBodyParts": self.applicable_body_parts or [],
            "applicableImagingTypes": self.applicable_imaging_types or [],
            "classNames": self.class_names or [],
            "inputShape": self.input_shape,
            "preprocessingSteps": self.preprocessing_steps or [],
            "performance": self.performance or {},
            "trainedOn": self.trained_on or {},
            "artifactPath": self.artifact_path,
            "status": self.status,
            "createdBy": self.created_by,
            "trainingJobId": self.training_job_id,
            "usageCount": self.usage_count,
            "lastUsed": _iso(self.last_used),
            "createdAt": _iso(self.created_at),
        }


# ── Training jobs ───────────────────────────────────────────────────────────

class TrainingJob(models.Model):
    """A submitted training run.

    Holds the target model descriptor, the training config, the status
    plus its message / failure reason, and the per-epoch progress
    record the polling client reads.
    """

    PENDING = 'pending'
    PREPARING = 'preparing'
    TRAINING = 'training'
    COMPLETED = 'completed'
    FAILED = 'failed'

    STATUS_CHOICES = [
        (PENDING, 'Pending'),
        (PREPARING, 'Preparing'),
        (TRAINING, 'Training'),
        (COMPLETED, 'Completed'),
        (FAILED, 'Failed'),
    ]

    ACTIVE_STATUSES = (PENDING, PREPARING, TRAINING)
    TERMINAL_STATUSES = (COMPLETED, FAILED)
    STATUS_MESSAGE_LENGTH = 255

    TRANSITIONS = {
        PENDING: {PREPARING, FAILED},
        PREPARING: {TRAINING, FAILED},
        TRAINING: {COMPLETED, FAILED},
        COMPLETED: set(),
        FAILED: set(),
    }

    ARCHITECTURES = [
        ('default', 'Default (VGG-style)'),
        ('mobilenet', 'MobileNet-style'),
        ('simple', 'Simple MLP'),
    ]

    # ── Identity ────────────────────────────────────────────────────────
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')
    submitted_by = models.CharField(max_length=150, db_index=True)

    dataset = models.ForeignKey(
        Dataset, null=True, on_delete=models.SET_NULL, related_name='jobs',
    )
    dataset_name = models.CharField(max_length=200, blank=True, default='')

    # ── Target model descriptor ─────────────────────────────────────────
    model_type = models.CharField(max_length=20, choices=MLModel.MODEL_TYPES, default='classification')
    model_name = models.CharField(max_length=200)
    model_version = models.CharField(max_length=50)
    model_description = models.TextField(blank=True, default='')
    model_architecture = models.CharField(max_length=20, choices=ARCHITECTURES, default='default')
    input_width = models.PositiveIntegerField(default=224)
    input_height = models.PositiveIntegerField(default=224)
    input_channels = models.PositiveSmallIntegerField(default=3)
    applicable_body_parts = models.JSONField(default=list, blank=True)

    # ── Training config ─────────────────────────────────────────────────
    epochs = models.PositiveIntegerField(default=10)
    batch_size = models.PositiveIntegerField(default=32)
    validation_split = models.FloatField(default=0.2)

    # ── Status ──────────────────────────────────────────────────────────
    status = models.CharField(
        max_length=20, choices=STATUS_CHOICES, default=PENDING, db_index=True,
    )
    status_message = models.CharField(max_length=STATUS_MESSAGE_LENGTH, blank=True, default='')
    failure_reason = models.TextField(blank=True, default='')
    cancel_requested = models.BooleanField(default=False)

    # ── Progress ────────────────────────────────────────────────────────
    current_epoch = models.PositiveIntegerField(default=0)
    total_epochs = models.PositiveIntegerField(default=0)
    train_loss = models.FloatField(null=True, blank=True)
    train_accuracy = models.FloatField(null=True, blank=True)
    val_loss = models.FloatField(null=True, blank=True)
    val_accuracy = models.FloatField(null=True, blank=True)

    # ── Final metrics ───────────────────────────────────────────────────
    evaluation_loss = models.FloatField(null=True, blank=True)
    evaluation_accuracy = models.FloatField(null=True, blank=True)
    training_time = models.FloatField(null=True, blank=True, help_text='Seconds.')
    train_samples = models.PositiveIntegerField(null=True, blank=True)
    val_samples = models.PositiveIntegerField(null=True, blank=True)

    model = models.ForeignKey(
        MLModel, null=True, blank=True, on_delete=models.SET_NULL, related_name='jobs',
    )

    # ── Timestamps ──────────────────────────────────────────────────────
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'training_jobs'
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['submitted_by', 'status'], name='idx_job_owner_status'),
        ]

    def __str__(self) -> str:
        return f"{self.name} #{self.pk} ({self.status})"

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def can_transition(self, to: str) -> bool:
        return to in self.TRANSITIONS.get(self.status, set())

    def transition(self, to: str, *, message: str = '', reason: str = '') -> list[str]:
        """Move to status *to* in memory and return the changed field names.

        Raises ``ValueError`` for a transition the state machine forbids.
        The message is clipped to fit ``status_message``; a failure keeps
        the full text in ``failure_reason``.
        The caller persists with ``save(update_fields=...)``.
        """
        if not self.can_transition(to):
            raise ValueError(f"Illegal job transition {self.status} → {to}")

        self.status = to
        fields = ['status', 'status_message']
        self.status_message = message[:self.STATUS_MESSAGE_LENGTH]

        if to == self.PREPARING and self.started_at is None:
            self.started_at = timezone.now()
            fields.append('started_at')
        if to in self.TERMINAL_STATUSES:
            self.completed_at = timezone.now()
            fields.append('completed_at')
        if to == self.FAILED:
            self.failure_reason = reason or message
            fields.append('failure_reason')
        return fields

    @property
    def progress(self) -> dict:
        return {
            "currentEpoch": self.current_epoch,
            "totalEpochs": self.total_epochs,
            "trainLoss": self.train_loss,
            "trainAcc": self.train_accuracy,
            "valLoss": self.val_loss,
            "valAcc": self.val_accuracy,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.pk,
            "name": self.name,
            "description": self.description,
            "submittedBy": self.submitted_by,
            "datasetId": self.dataset_id,
            "datasetName": self.dataset_name,
            "modelType": self.model_type,
            "modelName": self.model_name,
            "modelVersion": self.model_version,
            "modelDescription": self.model_description,
            "modelArchitecture": self.model_architecture,
            "inputShape": {
                "width": self.input_width,
                "height": self.input_height,
                "channels": self.input_channels,
            },
            "applicableBodyParts": self.applicable_body_parts or [],
            "epochs": self.epochs,
            "batchSize": self.batch_size,
            "validationSplit": self.validation_split,
            "status": self.status,
            "statusMessage": self.status_message,
            "failureReason": self.failure_reason,
            "cancelRequested": self.cancel_requested,
            "progress": self.progress,
            "trainingMetrics": {
                "evaluationLoss": self.evaluation_loss,
                "evaluationAccuracy": self.evaluation_accuracy,
                "trainingTime": self.training_time,
                "trainSamples": self.train_samples,
                "valSamples": self.val_samples,
            },
            "modelId": self.model_id,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }
