import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Dataset",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200, unique=True)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "imaging_type",
                    models.CharField(
                        choices=[
                            ("xray", "X-ray"),
                            ("mri", "MRI"),
                            ("ct", "CT"),
                            ("ultrasound", "Ultrasound"),
                            ("other", "Other"),
                        ],
                        default="other",
                        max_length=20,
                    ),
                ),
                ("classes", models.JSONField(blank=True, default=list)),
                ("total_samples", models.PositiveIntegerField(default=0)),
                ("train_samples", models.PositiveIntegerField(default=0)),
                ("val_samples", models.PositiveIntegerField(default=0)),
                (
                    "path",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Dataset root on disk. Blank → <DATA_ROOT>/datasets/<id>.",
                        max_length=500,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("creating", "Creating"),
                            ("ready", "Ready"),
                            ("updating", "Updating"),
                            ("error", "Error"),
                        ],
                        db_index=True,
                        default="creating",
                        max_length=20,
                    ),
                ),
                ("created_by", models.CharField(blank=True, default="", max_length=150)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "datasets",
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="MLModel",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200)),
                ("version", models.CharField(max_length=50)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "model_type",
                    models.CharField(
                        choices=[
                            ("classification", "Classification"),
                            ("detection", "Detection"),
                            ("segmentation", "Segmentation"),
                            ("prediction", "Prediction"),
                        ],
                        default="classification",
                        max_length=20,
                    ),
                ),
                ("architecture", models.CharField(blank=True, default="", max_length=20)),
                ("applicable_body_parts", models.JSONField(blank=True, default=list)),
                ("applicable_imaging_types", models.JSONField(blank=True, default=list)),
                ("class_names", models.JSONField(default=list)),
                ("input_width", models.PositiveIntegerField(default=224)),
                ("input_height", models.PositiveIntegerField(default=224)),
                ("input_channels", models.PositiveSmallIntegerField(default=3)),
                ("preprocessing_steps", models.JSONField(blank=True, default=list)),
                ("performance", models.JSONField(blank=True, default=dict)),
                ("trained_on", models.JSONField(blank=True, default=dict)),
                ("artifact_path", models.CharField(max_length=500)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("testing", "Testing"),
                            ("inactive", "Inactive"),
                            ("archived", "Archived"),
                        ],
                        db_index=True,
                        default="testing",
                        max_length=20,
                    ),
                ),
                ("created_by", models.CharField(blank=True, default="", max_length=150)),
                (
                    "training_job_id",
                    models.BigIntegerField(
                        blank=True,
                        help_text="Job that produced this entry; kept when the job record is deleted.",
                        null=True,
                    ),
                ),
                ("usage_count", models.PositiveIntegerField(default=0)),
                ("last_used", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "ml_models",
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["model_type", "status"], name="idx_model_type_status")],
                "constraints": [
                    models.UniqueConstraint(fields=("name", "version"), name="uq_model_name_version"),
                ],
            },
        ),
        migrations.CreateModel(
            name="TrainingJob",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=200)),
                ("description", models.TextField(blank=True, default="")),
                ("submitted_by", models.CharField(db_index=True, max_length=150)),
                ("dataset_name", models.CharField(blank=True, default="", max_length=200)),
                (
                    "model_type",
                    models.CharField(
                        choices=[
                            ("classification", "Classification"),
                            ("detection", "Detection"),
                            ("segmentation", "Segmentation"),
                            ("prediction", "Prediction"),
                        ],
                        default="classification",
                        max_length=20,
                    ),
                ),
                ("model_name", models.CharField(max_length=200)),
                ("model_version", models.CharField(max_length=50)),
                ("model_description", models.TextField(blank=True, default="")),
                (
                    "model_architecture",
                    models.CharField(
                        choices=[
                            ("default", "Default (VGG-style)"),
                            ("mobilenet", "MobileNet-style"),
                            ("simple", "Simple MLP"),
                        ],
                        default="default",
                        max_length=20,
                    ),
                ),
                ("input_width", models.PositiveIntegerField(default=224)),
                ("input_height", models.PositiveIntegerField(default=224)),
                ("input_channels", models.PositiveSmallIntegerField(default=3)),
                ("applicable_body_parts", models.JSONField(blank=True, default=list)),
                ("epochs", models.PositiveIntegerField(default=10)),
                ("batch_size", models.PositiveIntegerField(default=32)),
                ("validation_split", models.FloatField(default=0.2)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("preparing", "Preparing"),
                            ("training", "Training"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("status_message", models.CharField(blank=True, default="", max_length=255)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("cancel_requested", models.BooleanField(default=False)),
                ("current_epoch", models.PositiveIntegerField(default=0)),
                ("total_epochs", models.PositiveIntegerField(default=0)),
                ("train_loss", models.FloatField(blank=True, null=True)),
                ("train_accuracy", models.FloatField(blank=True, null=True)),
                ("val_loss", models.FloatField(blank=True, null=True)),
                ("val_accuracy", models.FloatField(blank=True, null=True)),
                ("evaluation_loss", models.FloatField(blank=True, null=True)),
                ("evaluation_accuracy", models.FloatField(blank=True, null=True)),
                ("training_time", models.FloatField(blank=True, help_text="Seconds.", null=True)),
                ("train_samples", models.PositiveIntegerField(blank=True, null=True)),
                ("val_samples", models.PositiveIntegerField(blank=True, null=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "dataset",
                    models.ForeignKey(
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="jobs",
                        to="diagnostics.dataset",
                    ),
                ),
                (
                    "model",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="jobs",
                        to="diagnostics.mlmodel",
                    ),
                ),
            ],
            options={
                "db_table": "training_jobs",
                "ordering": ["-created_at", "-id"],
                "indexes": [models.Index(fields=["submitted_by", "status"], name="idx_job_owner_status")],
            },
        ),
    ]
