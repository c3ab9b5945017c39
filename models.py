from __future__ import annotations

from sqlalchemy import Boolean, Column, Integer, String, Text, UniqueConstraint

from db import Base


class IdCounter(Base):
    __tablename__ = "id_counters"

    key = Column(String, primary_key=True)
    nextValue = Column(Integer, nullable=False, default=1)


class Employee(Base):
    """HR reference record. Read-only for the verification workflow."""

    __tablename__ = "employees"

    employeeId = Column(String, primary_key=True)
    name = Column(Text, nullable=False, default="")
    email = Column(Text, nullable=False, default="")
    entityName = Column(String, nullable=False, default="", index=True)
    department = Column(Text, nullable=False, default="")
    designation = Column(Text, nullable=False, default="")
    dateOfJoining = Column(String, nullable=False, default="")
    dateOfLeaving = Column(String, nullable=False, default="")
    exitReason = Column(Text, nullable=False, default="")
    fnfStatus = Column(String, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Verifier(Base):
    __tablename__ = "verifiers"

    verifierId = Column(String, primary_key=True)
    companyName = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, unique=True, index=True)
    passwordHash = Column(Text, nullable=False, default="")
    isEmailVerified = Column(Boolean, nullable=False, default=False)
    isActive = Column(Boolean, nullable=False, default=True, index=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Admin(Base):
    __tablename__ = "admins"

    adminId = Column(String, primary_key=True)
    username = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=False, default="", index=True)
    fullName = Column(Text, nullable=False, default="")
    passwordHash = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, default="ADMIN", index=True)
    permissionsCsv = Column(Text, nullable=False, default="")
    isActive = Column(Boolean, nullable=False, default=True, index=True)
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class Otp(Base):
    __tablename__ = "otps"

    email = Column(String, primary_key=True)
    otpHash = Column(String, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    attempts = Column(Integer, nullable=False, default=0)
    lastSentAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class VerificationRecord(Base):
    __tablename__ = "verification_records"

    verificationId = Column(String, primary_key=True)
    employeeId = Column(String, nullable=False, default="", index=True)
    verifierId = Column(String, nullable=False, default="", index=True)
    submittedDataJson = Column(Text, nullable=False, default="")
    comparisonResultsJson = Column(Text, nullable=False, default="")
    overallStatus = Column(String, nullable=False, default="", index=True)
    matchScore = Column(Integer, nullable=False, default=0)
    consentGiven = Column(Boolean, nullable=False, default=False)
    reportUrl = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
    completedAt = Column(Text, nullable=False, default="")


class Appeal(Base):
    __tablename__ = "appeals"
    # One appeal per verification, whatever its status.
    __table_args__ = (UniqueConstraint("verificationId", name="uq_appeals_verificationId"),)

    appealId = Column(String, primary_key=True)
    verificationId = Column(String, nullable=False)
    employeeId = Column(String, nullable=False, default="", index=True)
    verifierId = Column(String, nullable=False, default="", index=True)
    comments = Column(Text, nullable=False, default="")
    mismatchedFieldsJson = Column(Text, nullable=False, default="")
    documentJson = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="pending", index=True)
    hrResponse = Column(Text, nullable=False, default="")
    reviewedBy = Column(String, nullable=False, default="")
    reviewedAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")


class VerificationAttempt(Base):
    __tablename__ = "verification_attempts"
    __table_args__ = (UniqueConstraint("verifierId", "employeeId", name="uq_verification_attempts_verifier_employee"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    verifierId = Column(String, nullable=False)
    employeeId = Column(String, nullable=False, index=True)
    attemptCount = Column(Integer, nullable=False, default=0)
    isBlocked = Column(Boolean, nullable=False, default=False, index=True)
    blockedAt = Column(Text, nullable=False, default="")
    lastAttemptAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")


class AccessLog(Base):
    __tablename__ = "access_logs"

    logId = Column(String, primary_key=True)
    email = Column(String, nullable=False, default="", index=True)
    role = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    status = Column(String, nullable=False, default="", index=True)
    failureReason = Column(Text, nullable=False, default="")
    ipAddress = Column(String, nullable=False, default="")
    userAgent = Column(Text, nullable=False, default="")
    metaJson = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    actorEmail = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    metaJson = Column(Text, nullable=False, default="")


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String, nullable=False, default="", index=True)
    emailType = Column(String, nullable=False, default="other", index=True)
    recipient = Column(Text, nullable=False, default="")
    subject = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="", index=True)
    responseTimeMs = Column(Integer, nullable=False, default=0)
    messageId = Column(Text, nullable=False, default="")
    error = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
